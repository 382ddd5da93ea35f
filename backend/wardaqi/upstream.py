# backend/wardaqi/upstream.py
"""
Upstream data gathering for a single coordinate.

Four independent calls run concurrently (station live feed, current
concentrations, trailing 24h history, next 24h forecast). Each branch has its
own timeout and is settled into an UpstreamResult; a failing branch never
cancels or fails the others.
"""
import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Generic, List, Optional, Tuple, TypeVar

import aiohttp
import pytz
from pydantic import ValidationError

from .aqi import prominent_index, round_half_up
from .errors import UpstreamError
from .models import LiveFeed, PollutantReading, PollutantSample, TimeSeriesPoint

logger = logging.getLogger(__name__)

T = TypeVar("T")

SERIES_LENGTH = 24
LIVE_FEED = "live_feed"
CURRENT = "current"
HISTORY = "history"
FORECAST = "forecast"


@dataclass(frozen=True)
class UpstreamResult(Generic[T]):
    source: str
    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, source: str, value: T) -> "UpstreamResult[T]":
        return cls(source=source, value=value)

    @classmethod
    def failure(cls, source: str, error: str) -> "UpstreamResult[T]":
        return cls(source=source, error=error)


@dataclass(frozen=True)
class GatherResult:
    live_feed: UpstreamResult[LiveFeed]
    current: UpstreamResult[PollutantReading]
    history: UpstreamResult[List[PollutantSample]]
    forecast: UpstreamResult[List[PollutantSample]]
    elapsed_seconds: float = field(default=0.0, compare=False)

    def failed_sources(self) -> List[str]:
        return [r.source for r in (self.live_feed, self.current, self.history, self.forecast) if not r.ok]


# --- Payload parsing (raw JSON -> internal models) ---

def _number(value) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    return None if math.isnan(value) else value


def parse_live_feed(payload) -> LiveFeed:
    """WAQI feed response. A station without a numeric index still counts as a successful feed."""
    if not isinstance(payload, dict) or payload.get("status") != "ok":
        reason = payload.get("data") if isinstance(payload, dict) else "non-object payload"
        raise UpstreamError(LIVE_FEED, f"feed status not ok: {reason}")
    data = payload.get("data")
    if not isinstance(data, dict):
        raise UpstreamError(LIVE_FEED, "missing data object")

    raw_aqi = _number(data.get("aqi"))
    city = data.get("city") if isinstance(data.get("city"), dict) else {}
    obs_time = data.get("time") if isinstance(data.get("time"), dict) else {}
    return LiveFeed(
        aqi=round_half_up(raw_aqi) if raw_aqi is not None and raw_aqi >= 0 else None,
        station=city.get("name"),
        dominant_pollutant=data.get("dominentpol"),
        observed_at=obs_time.get("s"),
    )


def parse_components(components) -> PollutantReading:
    """OpenWeather `components` block; co arrives in µg/m³ and is stored in mg/m³."""
    if not isinstance(components, dict):
        raise ValueError("components is not an object")
    co = _number(components.get("co"))
    return PollutantReading(
        pm2_5=_number(components.get("pm2_5")),
        pm10=_number(components.get("pm10")),
        no2=_number(components.get("no2")),
        so2=_number(components.get("so2")),
        co=round(co / 1000, 3) if co is not None else None,
        o3=_number(components.get("o3")),
    )


def parse_pollution_list(payload, source: str) -> List[PollutantSample]:
    entries = payload.get("list") if isinstance(payload, dict) else None
    if not isinstance(entries, list):
        raise UpstreamError(source, "missing 'list' in pollution payload")
    samples = []
    for entry in entries:
        try:
            samples.append(PollutantSample(
                timestamp=datetime.fromtimestamp(int(entry["dt"]), tz=timezone.utc),
                reading=parse_components(entry.get("components")),
            ))
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            logger.debug(f"Skipping malformed {source} entry {entry!r}: {e}")
    samples.sort(key=lambda s: s.timestamp)
    return samples


def parse_current(payload) -> PollutantReading:
    samples = parse_pollution_list(payload, CURRENT)
    if not samples:
        raise UpstreamError(CURRENT, "empty pollution list")
    return samples[-1].reading


def to_time_series(samples: List[PollutantSample], tz_name: str) -> List[TimeSeriesPoint]:
    """Maps samples to points, each point indexed from its own concentrations."""
    tz = pytz.timezone(tz_name)
    return [
        TimeSeriesPoint(
            time=sample.timestamp.astimezone(tz).strftime("%H:%M"),
            aqi=prominent_index(sample.reading),
            pm2_5=sample.reading.pm2_5,
            pm10=sample.reading.pm10,
        )
        for sample in samples
    ]


def history_series(samples: List[PollutantSample], tz_name: str) -> List[TimeSeriesPoint]:
    return to_time_series(samples[-SERIES_LENGTH:], tz_name)


def forecast_series(samples: List[PollutantSample], tz_name: str) -> List[TimeSeriesPoint]:
    return to_time_series(samples[:SERIES_LENGTH], tz_name)


# --- Providers ---

async def _get_json(session: aiohttp.ClientSession, source: str, url: str, params: dict):
    async with session.get(url, params=params) as response:
        if response.status != 200:
            raise UpstreamError(source, f"HTTP {response.status}")
        try:
            return await response.json(content_type=None)
        except ValueError as e:
            raise UpstreamError(source, f"invalid JSON body: {e}")


class LiveFeedProvider:
    """Nearest-station crowd-sourced feed (WAQI geo feed)."""

    def __init__(self, session: aiohttp.ClientSession, base_url: str, token: str):
        self._session = session
        self._base_url = base_url.rstrip("/")
        self._token = token

    async def fetch(self, lat: float, lon: float) -> LiveFeed:
        url = f"{self._base_url}/feed/geo:{lat};{lon}/"
        payload = await _get_json(self._session, LIVE_FEED, url, {"token": self._token})
        return parse_live_feed(payload)


class PollutantProvider:
    """Modelled pollutant concentrations (OpenWeather air pollution API)."""

    def __init__(self, session: aiohttp.ClientSession, base_url: str, api_key: str):
        self._session = session
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key

    def _params(self, lat: float, lon: float, **extra) -> dict:
        return {"lat": lat, "lon": lon, "appid": self._api_key, **extra}

    async def current(self, lat: float, lon: float) -> PollutantReading:
        payload = await _get_json(self._session, CURRENT, f"{self._base_url}/air_pollution", self._params(lat, lon))
        return parse_current(payload)

    async def history(self, lat: float, lon: float, start: datetime, end: datetime) -> List[PollutantSample]:
        params = self._params(lat, lon, start=int(start.timestamp()), end=int(end.timestamp()))
        payload = await _get_json(self._session, HISTORY, f"{self._base_url}/air_pollution/history", params)
        return parse_pollution_list(payload, HISTORY)

    async def forecast(self, lat: float, lon: float) -> List[PollutantSample]:
        payload = await _get_json(self._session, FORECAST, f"{self._base_url}/air_pollution/forecast", self._params(lat, lon))
        return parse_pollution_list(payload, FORECAST)


# --- Fan-out / fan-in ---

class UpstreamGatherer:
    def __init__(
        self,
        live_feed: LiveFeedProvider,
        pollutants: PollutantProvider,
        timeout_seconds: float = 8.0,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._live_feed = live_feed
        self._pollutants = pollutants
        self._timeout = timeout_seconds
        self._now = now

    async def _settle(self, source: str, call: Awaitable[T]) -> UpstreamResult[T]:
        try:
            value = await asyncio.wait_for(call, timeout=self._timeout)
            return UpstreamResult.success(source, value)
        except asyncio.TimeoutError:
            logger.warning(f"Upstream '{source}' timed out after {self._timeout}s")
            return UpstreamResult.failure(source, "timeout")
        except UpstreamError as e:
            logger.warning(f"Upstream '{source}' failed: {e.reason}")
            return UpstreamResult.failure(source, e.reason)
        except (aiohttp.ClientError, ValidationError, ValueError) as e:
            logger.warning(f"Upstream '{source}' failed: {e}")
            return UpstreamResult.failure(source, str(e) or type(e).__name__)
        except Exception as e:
            logger.error(f"Unexpected error in upstream '{source}': {e}", exc_info=True)
            return UpstreamResult.failure(source, type(e).__name__)

    async def gather(self, lat: float, lon: float) -> GatherResult:
        now = self._now()
        started = time.monotonic()
        live_feed, current, history, forecast = await asyncio.gather(
            self._settle(LIVE_FEED, self._live_feed.fetch(lat, lon)),
            self._settle(CURRENT, self._pollutants.current(lat, lon)),
            self._settle(HISTORY, self._pollutants.history(lat, lon, now - timedelta(hours=24), now)),
            self._settle(FORECAST, self._pollutants.forecast(lat, lon)),
        )
        result = GatherResult(
            live_feed=live_feed,
            current=current,
            history=history,
            forecast=forecast,
            elapsed_seconds=time.monotonic() - started,
        )
        failed = result.failed_sources()
        if failed:
            logger.info(f"Gathered {lat},{lon} in {result.elapsed_seconds:.2f}s with failed branches: {', '.join(failed)}")
        else:
            logger.debug(f"Gathered {lat},{lon} in {result.elapsed_seconds:.2f}s, all branches ok")
        return result

    async def gather_live_feeds(self, points: List[Tuple[float, float]]) -> List[UpstreamResult[LiveFeed]]:
        """Live feed for every point at once; results are in input order, one settled result per point."""
        started = time.monotonic()
        results = await asyncio.gather(*(self._settle(LIVE_FEED, self._live_feed.fetch(lat, lon)) for lat, lon in points))
        failed = sum(1 for r in results if not r.ok)
        logger.info(f"Fetched {len(results)} live feeds in {time.monotonic() - started:.2f}s ({failed} failed)")
        return list(results)
