# backend/wardaqi/models.py
import re
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import List, Optional
from datetime import datetime, timezone

POLLUTANT_FIELDS = ("pm2_5", "pm10", "no2", "so2", "co", "o3")


def _ensure_utc(v: datetime) -> datetime:
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


# --- Geometry / Upstream Models ---

class WardIdentity(BaseModel):
    """A ward resolved from the boundary file, fixed for the lifetime of a request."""
    model_config = ConfigDict(frozen=True)

    ward_id: str = Field(..., examples=["W-042"])
    ward_name: str = Field(..., examples=["Rohini"])
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class PollutantReading(BaseModel):
    """Pollutant concentrations in µg/m³ (co in mg/m³). Any field may be missing."""
    model_config = ConfigDict(frozen=True)

    pm2_5: Optional[float] = Field(None, examples=[65.0])
    pm10: Optional[float] = Field(None, examples=[140.0])
    no2: Optional[float] = Field(None, examples=[42.1])
    so2: Optional[float] = Field(None, examples=[8.3])
    co: Optional[float] = Field(None, examples=[1.2])
    o3: Optional[float] = Field(None, examples=[30.5])

    def is_empty(self) -> bool:
        return all(getattr(self, name) is None for name in POLLUTANT_FIELDS)

    def present(self) -> dict:
        """Only the pollutants that were actually reported."""
        return {name: getattr(self, name) for name in POLLUTANT_FIELDS if getattr(self, name) is not None}


class PollutantSample(BaseModel):
    """One timestamped entry of a provider history/forecast list."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    reading: PollutantReading

    @field_validator('timestamp')
    def ensure_timezone_aware(cls, v):
        return _ensure_utc(v)


class LiveFeed(BaseModel):
    """Nearest-station feed. `aqi` is None when the station publishes no usable index."""
    model_config = ConfigDict(frozen=True)

    aqi: Optional[int] = None
    station: Optional[str] = None
    dominant_pollutant: Optional[str] = None
    observed_at: Optional[str] = None


class TimeSeriesPoint(BaseModel):
    time: str = Field(..., examples=["14:00"], description="Local time of day of the sample.")
    aqi: Optional[int] = None
    pm2_5: Optional[float] = None
    pm10: Optional[float] = None


class AQICategory(BaseModel):
    level: str = Field(..., examples=["Moderate"])
    color: str = Field(..., examples=["#ffff00"])


# --- Narrative Models ---

_PERCENT_RE = re.compile(r"-?\d+(?:\.\d+)?")


class EstimatedEffects(BaseModel):
    model_config = ConfigDict(frozen=True, extra='ignore')

    pollution: str = ""
    socio_economic: str = ""
    workforce_productivity: str = ""


class SourceContribution(BaseModel):
    model_config = ConfigDict(frozen=True, extra='ignore')

    source: str
    contribution_percent: float = 0.0
    major_pollutant: str = ""
    impact_if_removed: str = ""
    citizen_mitigation: str = ""
    govt_mitigation: str = ""

    @field_validator('contribution_percent', mode='before')
    def coerce_percent(cls, value):
        # Model output sometimes comes back as "40%" or "approx. 40"
        if isinstance(value, str):
            match = _PERCENT_RE.search(value)
            if not match:
                raise ValueError(f"Unparsable contribution percentage: {value!r}")
            return float(match.group())
        return value


class PolicyRecommendation(BaseModel):
    model_config = ConfigDict(frozen=True, extra='ignore')

    policy_name: str
    description: str = ""
    estimated_effects: EstimatedEffects = Field(default_factory=EstimatedEffects)


class NarrativeAnalysis(BaseModel):
    """
    Structured narrative for one ward. Instances are immutable; tagging a cached
    narrative as offline data produces a new instance via `as_offline()`.
    """
    model_config = ConfigDict(frozen=True, extra='ignore', populate_by_name=True)

    source_breakdown: List[SourceContribution] = Field(default_factory=list)
    impact_summary: str
    active_policies: str
    policy_recommendations: List[PolicyRecommendation] = Field(default_factory=list)
    is_offline_data: Optional[bool] = Field(None, alias="isOfflineData")
    error: Optional[str] = None

    def as_offline(self) -> "NarrativeAnalysis":
        return self.model_copy(update={"is_offline_data": True})

    def to_json_dict(self) -> dict:
        return self.model_dump(mode='json', by_alias=True, exclude_none=True)


class CachedNarrative(BaseModel):
    """Durable narrative record; at most one per ward."""
    ward_id: str
    narrative: NarrativeAnalysis
    last_updated: datetime

    @field_validator('last_updated')
    def ensure_timezone_aware(cls, v):
        return _ensure_utc(v)


# --- Response Models ---

class FullWardReport(BaseModel):
    """Response body of GET /api/ward-analysis/{ward_id}."""
    model_config = ConfigDict(frozen=True)

    success: bool = True
    ward: str
    ward_id: str
    current_aqi: int = Field(..., description="Reported index; -1 when no source could provide one.")
    aqi_category: AQICategory
    cigarettes_count: str = Field(..., examples=["3.0"], description="Cigarettes-per-day equivalent of the PM2.5 exposure.")
    raw_pollutants: PollutantReading
    history_24h: List[TimeSeriesPoint] = Field(default_factory=list)
    forecast_24h: List[TimeSeriesPoint] = Field(default_factory=list)
    analysis: NarrativeAnalysis
    unavailable_sources: List[str] = Field(default_factory=list, description="Upstream branches that failed for this report.")

    def to_json_dict(self) -> dict:
        # Missing pollutants stay as explicit nulls; only the narrative drops unset tags
        data = self.model_dump(mode='json', exclude={'analysis'})
        data['analysis'] = self.analysis.to_json_dict()
        return data


class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    status_code: int = Field(500, exclude=True)


class WardSummary(BaseModel):
    ward_id: str
    ward_name: str


class WardAQI(BaseModel):
    """One entry of the city-wide overview. `aqi` is None when no source had a usable index."""
    ward_id: str
    ward_name: str
    latitude: float
    longitude: float
    aqi: Optional[int] = Field(None, examples=[182])
    aqi_category: AQICategory
    station: Optional[str] = Field(None, examples=["Anand Vihar, Delhi"])
    source: Optional[str] = Field(None, examples=["live_feed"], description="'live_feed' or 'snapshot'.")


# --- Queue Message Models ---

class RefreshSegmentMessage(BaseModel):
    """Bulk refresh work item published to RabbitMQ."""
    start: int = Field(..., ge=0, examples=[0])
    count: int = Field(..., ge=0, examples=[70])
