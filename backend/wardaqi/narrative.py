# backend/wardaqi/narrative.py
"""
AI narrative analysis for wards.

NarrativeService serves one ward per request:
  fresh cached narrative  -> served as is, no generation call
  stale or missing        -> regenerate; on success upsert and serve
  regeneration failed     -> stale copy tagged isOfflineData, else a placeholder

It never raises; every path yields a complete NarrativeAnalysis.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from pydantic import ValidationError

from .aqi import prominent_pollutant
from .errors import NarrativeGenerationError
from .models import NarrativeAnalysis, PollutantReading, WardIdentity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FreshnessPolicy:
    """How long a stored narrative is served before regeneration is attempted."""
    max_age: timedelta = timedelta(hours=24)

    def is_fresh(self, last_updated: datetime, at: datetime) -> bool:
        return at - last_updated < self.max_age


def placeholder_narrative() -> NarrativeAnalysis:
    return NarrativeAnalysis(
        source_breakdown=[],
        impact_summary="AI analysis pending. Pollution source and health impact details for this ward will appear once the analysis service responds.",
        active_policies="Policy information pending. Active GRAP and municipal measures for this ward are being compiled.",
        policy_recommendations=[],
        error="AI analysis temporarily unavailable",
    )


# --- Prompting ---

NARRATIVE_SCHEMA = """{
  "source_breakdown": [
    {"source": "string", "contribution_percent": number, "major_pollutant": "string",
     "impact_if_removed": "string", "citizen_mitigation": "string", "govt_mitigation": "string"}
  ],
  "impact_summary": "string",
  "active_policies": "string",
  "policy_recommendations": [
    {"policy_name": "string", "description": "string",
     "estimated_effects": {"pollution": "string", "socio_economic": "string", "workforce_productivity": "string"}}
  ]
}"""


def _describe_reading(reading: Optional[PollutantReading]) -> str:
    if reading is None or reading.is_empty():
        return "no recent pollutant measurements"
    return ", ".join(f"{name.upper().replace('_', '.')}={value:g}" for name, value in reading.present().items())


def build_ward_prompt(ward: WardIdentity, aqi: int, reading: PollutantReading) -> str:
    index_text = str(aqi) if aqi >= 0 else "unavailable"
    dominant = prominent_pollutant(reading) or "unknown"
    return (
        "You are an air-quality policy analyst for Delhi municipal wards.\n"
        f"Ward: {ward.ward_name} (id {ward.ward_id}, lat {ward.latitude}, lon {ward.longitude})\n"
        f"Current AQI (CPCB scale): {index_text}; prominent pollutant: {dominant}\n"
        f"Concentrations (µg/m³, CO in mg/m³): {_describe_reading(reading)}\n\n"
        "Estimate the local pollution sources (contribution percentages summing to 100), "
        "summarise the health impact, list the currently active policies, and recommend policies.\n"
        "Respond with ONLY one JSON object of this shape, no markdown:\n"
        f"{NARRATIVE_SCHEMA}"
    )


def build_batch_prompt(entries: Iterable[Tuple[WardIdentity, Optional[PollutantReading]]]) -> str:
    lines = [
        f"- ward_id {ward.ward_id} | {ward.ward_name} | {_describe_reading(reading)}"
        for ward, reading in entries
    ]
    return (
        "You are an air-quality policy analyst for Delhi municipal wards.\n"
        "Produce an analysis for EACH ward below, using its latest known concentrations "
        "(µg/m³, CO in mg/m³).\n"
        + "\n".join(lines)
        + "\n\nRespond with ONLY a JSON array, no markdown. Each element must be "
        '{"ward_id": "<ward id from the list>", "analysis": <object>} where <object> has this shape:\n'
        f"{NARRATIVE_SCHEMA}"
    )


# --- Response parsing ---

def extract_balanced(text: str, open_char: str = "{", close_char: str = "}") -> Optional[str]:
    """First balanced open/close span in `text`, ignoring brackets inside JSON strings."""
    start = text.find(open_char)
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == open_char:
            depth += 1
        elif ch == close_char:
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def _validate_narrative(data) -> NarrativeAnalysis:
    if not isinstance(data, dict):
        raise NarrativeGenerationError("analysis is not a JSON object")
    if data.get("error"):
        raise NarrativeGenerationError(f"model reported an error: {data['error']}")
    # tags only the service sets
    data = {k: v for k, v in data.items() if k not in ("isOfflineData", "is_offline_data")}
    try:
        return NarrativeAnalysis.model_validate(data)
    except ValidationError as e:
        raise NarrativeGenerationError(f"analysis does not match schema: {e.error_count()} errors")


def parse_narrative(text: str) -> NarrativeAnalysis:
    span = extract_balanced(text or "", "{", "}")
    if span is None:
        raise NarrativeGenerationError("no JSON object in model response")
    try:
        data = json.loads(span)
    except json.JSONDecodeError as e:
        raise NarrativeGenerationError(f"invalid JSON object: {e}")
    return _validate_narrative(data)


def parse_batch(text: str, requested: Iterable[str]) -> Dict[str, NarrativeAnalysis]:
    """Narratives by ward id; unrequested or invalid elements are dropped."""
    span = extract_balanced(text or "", "[", "]")
    if span is None:
        raise NarrativeGenerationError("no JSON array in batch response")
    try:
        items = json.loads(span)
    except json.JSONDecodeError as e:
        raise NarrativeGenerationError(f"invalid JSON array: {e}")

    wanted = set(requested)
    results: Dict[str, NarrativeAnalysis] = {}
    for item in items:
        if not isinstance(item, dict):
            continue
        ward_id = str(item.get("ward_id", "")).strip()
        if ward_id not in wanted:
            logger.debug(f"Ignoring batch element for unrequested ward '{ward_id}'")
            continue
        body = item.get("analysis", item)
        try:
            results[ward_id] = _validate_narrative(body)
        except NarrativeGenerationError as e:
            logger.warning(f"Discarding batch analysis for ward '{ward_id}': {e}")
    return results


# --- Generative service ---

class NarrativeGenerator:
    """Gemini client returning raw response text."""

    def __init__(self, api_key: str, model_name: str, timeout_seconds: float = 30.0):
        if not api_key:
            logger.warning("GOOGLE_API_KEY is not set. Narrative generation will fail and fall back to cached data.")
        genai.configure(api_key=api_key)
        self._model = genai.GenerativeModel(model_name)
        self._timeout = timeout_seconds
        logger.info(f"Narrative generator configured with model '{model_name}'")

    async def generate(self, prompt: str, timeout_seconds: Optional[float] = None) -> str:
        timeout = timeout_seconds or self._timeout
        try:
            response = await asyncio.wait_for(
                self._model.generate_content_async(
                    prompt,
                    generation_config=genai.GenerationConfig(temperature=0.4),
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise NarrativeGenerationError(f"generation timed out after {timeout}s")
        except google_exceptions.GoogleAPIError as e:
            raise NarrativeGenerationError(f"generation request failed: {e}")

        try:
            text = response.text
        except ValueError as e:
            # raised when the candidate was blocked by safety filters or is empty
            raise NarrativeGenerationError(f"no text in response: {e}")
        if not text or not text.strip():
            raise NarrativeGenerationError("empty response")
        return text


# --- Per-request cache + fallback chain ---

class NarrativeService:
    def __init__(
        self,
        store,
        generator: NarrativeGenerator,
        freshness: FreshnessPolicy,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._store = store
        self._generator = generator
        self._freshness = freshness
        self._now = now
        self._locks: Dict[str, asyncio.Lock] = {}

    async def get_analysis(self, ward: WardIdentity, aqi: int, reading: PollutantReading) -> NarrativeAnalysis:
        try:
            return await self._get_analysis(ward, aqi, reading)
        except Exception as e:
            logger.error(f"Unexpected error resolving narrative for ward '{ward.ward_id}': {e}", exc_info=True)
            return placeholder_narrative()

    async def _get_analysis(self, ward: WardIdentity, aqi: int, reading: PollutantReading) -> NarrativeAnalysis:
        cached = await self._store.get_narrative(ward.ward_id)
        if cached is not None and self._freshness.is_fresh(cached.last_updated, self._now()):
            logger.info(f"Narrative cache HIT for ward '{ward.ward_id}' (updated {cached.last_updated.isoformat()})")
            return cached.narrative

        lock = self._locks.setdefault(ward.ward_id, asyncio.Lock())
        waited = lock.locked()
        async with lock:
            if waited:
                # a concurrent request just regenerated this ward
                latest = await self._store.get_narrative(ward.ward_id)
                if latest is not None and self._freshness.is_fresh(latest.last_updated, self._now()):
                    logger.info(f"Narrative for ward '{ward.ward_id}' regenerated by a concurrent request")
                    return latest.narrative
                cached = latest or cached
            return await self._regenerate(ward, aqi, reading, cached)

    async def _regenerate(self, ward: WardIdentity, aqi: int, reading: PollutantReading, cached) -> NarrativeAnalysis:
        logger.info(f"Narrative cache {'STALE' if cached else 'MISS'} for ward '{ward.ward_id}', generating")
        try:
            text = await self._generator.generate(build_ward_prompt(ward, aqi, reading))
            narrative = parse_narrative(text)
        except NarrativeGenerationError as e:
            return self._fallback(ward, cached, str(e))
        except Exception as e:
            logger.error(f"Generator raised unexpectedly for ward '{ward.ward_id}': {e}", exc_info=True)
            return self._fallback(ward, cached, type(e).__name__)

        if not await self._store.upsert_narrative(ward.ward_id, narrative, self._now()):
            logger.error(f"Generated narrative for ward '{ward.ward_id}' could not be persisted; serving it anyway")
        return narrative

    def _fallback(self, ward: WardIdentity, cached, reason: str) -> NarrativeAnalysis:
        if cached is not None:
            logger.warning(f"Narrative generation failed for ward '{ward.ward_id}' ({reason}); serving stale copy")
            return cached.narrative.as_offline()
        logger.warning(f"Narrative generation failed for ward '{ward.ward_id}' ({reason}); no cached copy, serving placeholder")
        return placeholder_narrative()
