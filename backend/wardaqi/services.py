# backend/wardaqi/services.py
"""
Process-wide collaborators, built once at startup and torn down at shutdown.
The API lifespan and the worker both open them through `open_services`.
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import AsyncGenerator, Optional

import aiohttp

from .config import Settings
from .db_client import InfluxStore
from .geometry import GeometryResolver
from .narrative import FreshnessPolicy, NarrativeGenerator, NarrativeService
from .orchestrator import WardReportService
from .queue_client import RefreshQueue
from .refresh import BulkRefreshJob
from .report_cache import ReportCache
from .upstream import LiveFeedProvider, PollutantProvider, UpstreamGatherer

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    resolver: GeometryResolver
    store: object
    reports: WardReportService
    refresh_job: BulkRefreshJob
    queue: Optional[RefreshQueue] = None


@asynccontextmanager
async def open_services(settings: Settings, with_queue: bool = True) -> AsyncGenerator[Services, None]:
    resolver = GeometryResolver.from_geojson(settings.wards_geojson_path or None)
    store = InfluxStore(settings)
    # Per-call timeouts are enforced by the gatherer; this only bounds stuck sockets
    session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=settings.upstream_timeout_seconds * 2))
    queue = RefreshQueue(settings) if with_queue else None

    try:
        gatherer = UpstreamGatherer(
            LiveFeedProvider(session, settings.live_feed_base_url, settings.live_feed_token),
            PollutantProvider(session, settings.pollutant_base_url, settings.pollutant_api_key),
            timeout_seconds=settings.upstream_timeout_seconds,
        )
        generator = NarrativeGenerator(settings.gemini_api_key, settings.gemini_model, settings.narrative_timeout_seconds)
        freshness = FreshnessPolicy(timedelta(hours=settings.narrative_freshness_hours))

        services = Services(
            settings=settings,
            resolver=resolver,
            store=store,
            reports=WardReportService(
                resolver,
                gatherer,
                NarrativeService(store, generator, freshness),
                store,
                ReportCache(settings.report_cache_capacity, settings.report_cache_ttl_seconds),
                display_timezone=settings.display_timezone,
                overview_cache=ReportCache(1, settings.report_cache_ttl_seconds),
            ),
            refresh_job=BulkRefreshJob(
                resolver,
                store,
                generator,
                freshness,
                slots_per_day=settings.refresh_slots_per_day,
                timeout_seconds=settings.batch_narrative_timeout_seconds,
            ),
            queue=queue,
        )
        if queue is not None:
            await queue.start()
        yield services
    finally:
        if queue is not None:
            await queue.close()
        await session.close()
        store.close()
        logger.info("Services closed.")
