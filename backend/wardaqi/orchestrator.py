# backend/wardaqi/orchestrator.py
import asyncio
import logging
from typing import List, Optional, Union

from fastapi import status

from .aqi import aqi_category, prominent_index
from .errors import InvalidWardIdError, WardAnalysisError, WardNotFoundError
from .geometry import GeometryResolver
from .models import ErrorResponse, FullWardReport, LiveFeed, PollutantReading, WardAQI, WardIdentity
from .narrative import NarrativeService
from .report_cache import ReportCache
from .resolution import cigarettes_equivalent, resolve_aqi
from .upstream import LIVE_FEED, UpstreamGatherer, UpstreamResult, forecast_series, history_series

logger = logging.getLogger(__name__)

OVERVIEW_KEY = "overview"
SNAPSHOT = "snapshot"


class WardReportService:
    """Builds the full report for one ward: cache, geometry, upstream fan-out, index, narrative."""

    def __init__(
        self,
        resolver: GeometryResolver,
        gatherer: UpstreamGatherer,
        narratives: NarrativeService,
        store,
        cache: ReportCache,
        display_timezone: str = "Asia/Kolkata",
        overview_cache: Optional[ReportCache] = None,
    ):
        self._resolver = resolver
        self._gatherer = gatherer
        self._narratives = narratives
        self._store = store
        self._cache = cache
        self._tz = display_timezone
        self._overview_cache = overview_cache or ReportCache(capacity=1)

    async def handle_ward_request(self, ward_id: Optional[str]) -> Union[FullWardReport, ErrorResponse]:
        try:
            return await self._build_report(ward_id)
        except WardAnalysisError as e:
            logger.info(f"Ward request rejected ({e.status_code}): {e.message}")
            return ErrorResponse(message=e.message, status_code=e.status_code)
        except Exception as e:
            logger.error(f"Unexpected error building report for ward '{ward_id}': {e}", exc_info=True)
            return ErrorResponse(
                message="Internal server error while building the ward analysis",
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )

    async def _build_report(self, ward_id: Optional[str]) -> FullWardReport:
        ward_id = (ward_id or "").strip()
        if not ward_id:
            raise InvalidWardIdError("Ward ID is required")

        cached = self._cache.get(ward_id)
        if cached is not None:
            logger.info(f"Report cache HIT for ward '{ward_id}'")
            return cached

        ward = self._resolver.lookup(ward_id)
        if ward is None:
            raise WardNotFoundError(f"Ward '{ward_id}' not found")

        logger.info(f"Building report for ward '{ward.ward_id}' ({ward.ward_name}) at {ward.latitude},{ward.longitude}")
        gathered = await self._gatherer.gather(ward.latitude, ward.longitude)

        reading = gathered.current.value if gathered.current.ok else PollutantReading()
        live_index = gathered.live_feed.value.aqi if gathered.live_feed.ok else None
        current_aqi = resolve_aqi(live_index, reading)
        history = history_series(gathered.history.value, self._tz) if gathered.history.ok else []
        forecast = forecast_series(gathered.forecast.value, self._tz) if gathered.forecast.ok else []

        snapshot_task = self._record_snapshot(ward.ward_id, reading)
        analysis, _ = await asyncio.gather(
            self._narratives.get_analysis(ward, current_aqi, reading),
            snapshot_task,
        )

        report = FullWardReport(
            ward=ward.ward_name,
            ward_id=ward.ward_id,
            current_aqi=current_aqi,
            aqi_category=aqi_category(current_aqi),
            cigarettes_count=cigarettes_equivalent(reading.pm2_5, current_aqi),
            raw_pollutants=reading,
            history_24h=history,
            forecast_24h=forecast,
            analysis=analysis,
            unavailable_sources=gathered.failed_sources(),
        )
        self._cache.put(ward_id, report)
        logger.info(f"Report for ward '{ward.ward_id}' built: AQI={current_aqi}, history={len(history)}, forecast={len(forecast)}")
        return report

    async def city_overview(self) -> List[WardAQI]:
        """
        Current index of every ward in canonical order, for the city map.

        Only the live feeds are fetched. A ward whose feed failed or published
        no positive index falls back to its last stored pollutant snapshot, and
        is reported without an index when there is none.
        """
        cached = self._overview_cache.get(OVERVIEW_KEY)
        if cached is not None:
            logger.info("Overview cache HIT")
            return cached

        wards = [self._resolver.lookup(ward_id) for ward_id in self._resolver.ward_ids()]
        feeds = await self._gatherer.gather_live_feeds([(w.latitude, w.longitude) for w in wards])
        overview = list(await asyncio.gather(*(self._overview_entry(w, f) for w, f in zip(wards, feeds))))

        self._overview_cache.put(OVERVIEW_KEY, overview)
        missing = sum(1 for entry in overview if entry.aqi is None)
        logger.info(f"City overview built for {len(overview)} wards ({missing} without an index)")
        return overview

    async def _overview_entry(self, ward: WardIdentity, feed: UpstreamResult[LiveFeed]) -> WardAQI:
        station = feed.value.station if feed.ok else None
        index, source = None, None
        if feed.ok and feed.value.aqi is not None and feed.value.aqi > 0:
            index, source = feed.value.aqi, LIVE_FEED
        else:
            snapshot = await self._latest_snapshot(ward.ward_id)
            computed = prominent_index(snapshot) if snapshot is not None else None
            if computed is not None and computed > 0:
                index, source = computed, SNAPSHOT

        return WardAQI(
            ward_id=ward.ward_id,
            ward_name=ward.ward_name,
            latitude=ward.latitude,
            longitude=ward.longitude,
            aqi=index,
            aqi_category=aqi_category(index),
            station=station,
            source=source,
        )

    async def _latest_snapshot(self, ward_id: str) -> Optional[PollutantReading]:
        try:
            return await self._store.get_latest_pollutants(ward_id)
        except Exception as e:
            logger.error(f"Error reading pollutant snapshot for ward '{ward_id}': {e}", exc_info=True)
            return None

    async def _record_snapshot(self, ward_id: str, reading: PollutantReading):
        # feeds the bulk refresh job; failure only costs that job some context
        if reading.is_empty():
            return
        try:
            if not await self._store.write_pollutant_snapshot(ward_id, reading):
                logger.warning(f"Pollutant snapshot for ward '{ward_id}' was not stored")
        except Exception as e:
            logger.error(f"Error storing pollutant snapshot for ward '{ward_id}': {e}", exc_info=True)
