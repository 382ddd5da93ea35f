# backend/wardaqi/resolution.py
import logging
import math
from typing import Optional

from .aqi import AQI_UNAVAILABLE, prominent_index, round_half_up
from .models import PollutantReading

logger = logging.getLogger(__name__)

# One cigarette a day ~ 22 µg/m³ of PM2.5 exposure
PM25_PER_CIGARETTE = 22.0

COARSE_ESTIMATE_ORDER = ("pm2_5", "pm10", "no2", "so2", "o3")


def _usable(value) -> bool:
    if value is None or isinstance(value, bool):
        return False
    if isinstance(value, float) and math.isnan(value):
        return False
    return value >= 0


def coarse_estimate(reading: PollutantReading) -> Optional[int]:
    """Rough index from the first available concentration, read 1:1 as index points."""
    for name in COARSE_ESTIMATE_ORDER:
        value = getattr(reading, name)
        if _usable(value):
            return round_half_up(value)
    return None


def resolve_aqi(live_feed_index: Optional[int], reading: PollutantReading) -> int:
    """
    Picks the reported index: station-published index, then the computed
    prominent-pollutant index, then a coarse estimate, then AQI_UNAVAILABLE.
    """
    if _usable(live_feed_index):
        return int(live_feed_index)

    computed = prominent_index(reading)
    if computed is not None:
        return computed

    estimate = coarse_estimate(reading)
    if estimate is not None:
        logger.info(f"No formula-based index available, using coarse estimate {estimate}")
        return estimate

    logger.warning("No pollutant data from any source, reporting index as unavailable")
    return AQI_UNAVAILABLE


def cigarettes_equivalent(pm2_5: Optional[float], index: int) -> str:
    """Cigarette equivalence with one decimal; falls back to index/22 without PM2.5."""
    if _usable(pm2_5):
        value = pm2_5 / PM25_PER_CIGARETTE
    elif index >= 0:
        value = index / PM25_PER_CIGARETTE
    else:
        value = 0.0
    return f"{value:.1f}"
