# backend/wardaqi/aqi.py
"""
Index calculator for the Indian (CPCB) National Air Quality Index.

Each pollutant has a piecewise-linear breakpoint table mapping a concentration
range [low, high] onto an index range [idx_low, idx_high]:

    idx = idx_low + (c - low) * (idx_high - idx_low) / (high - low)

The overall index is the highest sub-index ("prominent pollutant").
All functions here are pure.
"""
import math
from typing import Dict, List, Optional, Tuple

from .models import AQICategory, PollutantReading

PM25 = "pm2_5"
PM10 = "pm10"
NO2 = "no2"

Segment = Tuple[float, float, int, int]

# (concentration low, concentration high, index low, index high), µg/m³
BREAKPOINTS: Dict[str, List[Segment]] = {
    PM25: [
        (0, 30, 0, 50),
        (30, 60, 50, 100),
        (60, 90, 100, 200),
        (90, 120, 200, 300),
        (120, 250, 300, 400),
    ],
    PM10: [
        (0, 50, 0, 50),
        (50, 100, 50, 100),
        (100, 250, 100, 200),
        (250, 350, 200, 300),
        (350, 430, 300, 400),
    ],
    NO2: [
        (0, 40, 0, 50),
        (40, 80, 50, 100),
        (80, 180, 100, 200),
    ],
}

# Index points added per µg/m³ above the last breakpoint. NO2 has no entry:
# the simplified table stops at 180 and reports 0 above it (known limitation).
EXTRAPOLATION_SLOPE: Dict[str, float] = {
    PM25: 1.0,
    PM10: 1.0,
}

AQI_UNAVAILABLE = -1

# Upper bound of each CPCB health band
CATEGORY_BANDS = [
    (50, "Good", "#00b050"),
    (100, "Satisfactory", "#92d050"),
    (200, "Moderate", "#ffff00"),
    (300, "Poor", "#ff9900"),
    (400, "Very Poor", "#ff0000"),
]
SEVERE = ("Severe", "#c00000")
UNKNOWN = ("Unknown", "#666666")


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _is_missing(value: Optional[float]) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


def sub_index(pollutant: str, concentration: Optional[float]) -> Optional[int]:
    """
    Sub-index for one pollutant, or None when it cannot be computed
    (missing, NaN or negative concentration).
    """
    if pollutant not in BREAKPOINTS:
        raise ValueError(f"No breakpoint table for pollutant '{pollutant}'")
    if _is_missing(concentration) or concentration < 0:
        return None

    segments = BREAKPOINTS[pollutant]
    for low, high, idx_low, idx_high in segments:
        if concentration <= high:
            return round_half_up(idx_low + (concentration - low) * (idx_high - idx_low) / (high - low))

    slope = EXTRAPOLATION_SLOPE.get(pollutant)
    if slope is None:
        return 0
    _, top, _, top_idx = segments[-1]
    return round_half_up(top_idx + (concentration - top) * slope)


def sub_indices(reading: PollutantReading) -> Dict[str, Optional[int]]:
    return {pollutant: sub_index(pollutant, getattr(reading, pollutant)) for pollutant in BREAKPOINTS}


def prominent_index(reading: PollutantReading) -> Optional[int]:
    """Highest defined sub-index of the reading, or None if none is defined."""
    values = [v for v in sub_indices(reading).values() if v is not None]
    return max(values) if values else None


def prominent_pollutant(reading: PollutantReading) -> Optional[str]:
    defined = {k: v for k, v in sub_indices(reading).items() if v is not None}
    if not defined:
        return None
    return max(defined, key=defined.get)


def aqi_category(index: Optional[int]) -> AQICategory:
    if index is None or index < 0:
        level, color = UNKNOWN
        return AQICategory(level=level, color=color)
    for upper, level, color in CATEGORY_BANDS:
        if index <= upper:
            return AQICategory(level=level, color=color)
    level, color = SEVERE
    return AQICategory(level=level, color=color)
