import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from wardaqi.errors import UpstreamError
from wardaqi.geometry import GeometryResolver
from wardaqi.models import CachedNarrative, LiveFeed, NarrativeAnalysis, PollutantReading, PollutantSample, WardIdentity

NOW = datetime(2024, 11, 5, 6, 0, tzinfo=timezone.utc)


def narrative_payload(summary="Vehicle exhaust and road dust dominate.", **overrides) -> dict:
    payload = {
        "source_breakdown": [
            {"source": "Vehicular traffic", "contribution_percent": 40, "major_pollutant": "NO2",
             "impact_if_removed": "AQI drops by ~60", "citizen_mitigation": "Use the metro",
             "govt_mitigation": "Odd-even scheme"},
            {"source": "Road dust", "contribution_percent": "35%", "major_pollutant": "PM10"},
        ],
        "impact_summary": summary,
        "active_policies": "GRAP Stage II in force.",
        "policy_recommendations": [
            {"policy_name": "Mechanised sweeping", "description": "Nightly sweeping of arterial roads",
             "estimated_effects": {"pollution": "-10% PM10", "socio_economic": "Low cost",
                                   "workforce_productivity": "Fewer sick days"}},
        ],
    }
    payload.update(overrides)
    return payload


def make_narrative(summary="Vehicle exhaust and road dust dominate.") -> NarrativeAnalysis:
    return NarrativeAnalysis.model_validate(narrative_payload(summary))


def make_samples(count: int, first: datetime, step=timedelta(hours=1), pm2_5=50.0):
    return [
        PollutantSample(timestamp=first + step * i, reading=PollutantReading(pm2_5=pm2_5 + i, pm10=90.0))
        for i in range(count)
    ]


class FakeStore:
    def __init__(self):
        self.narratives = {}
        self.pollutants = {}
        self.upserts = []
        self.bulk_writes = []
        self.snapshots = []
        self.healthy = True
        self.fail_writes = False

    async def ping(self):
        return self.healthy

    async def get_narrative(self, ward_id):
        return self.narratives.get(ward_id)

    async def upsert_narrative(self, ward_id, narrative, timestamp):
        self.upserts.append(ward_id)
        if self.fail_writes:
            return False
        self.narratives[ward_id] = CachedNarrative(ward_id=ward_id, narrative=narrative, last_updated=timestamp)
        return True

    async def bulk_upsert_narratives(self, records):
        self.bulk_writes.append([r.ward_id for r in records])
        if self.fail_writes:
            return False
        for record in records:
            self.narratives[record.ward_id] = record
        return True

    async def get_latest_pollutants(self, ward_id):
        return self.pollutants.get(ward_id)

    async def write_pollutant_snapshot(self, ward_id, reading, timestamp=None):
        self.snapshots.append((ward_id, reading))
        return True

    def seed(self, ward_id, age: timedelta, summary="Cached analysis."):
        self.narratives[ward_id] = CachedNarrative(ward_id=ward_id, narrative=make_narrative(summary), last_updated=NOW - age)


class FakeGenerator:
    def __init__(self, response=None, error=None, delay=0.0):
        self.response = response
        self.error = error
        self.delay = delay
        self.prompts = []

    async def generate(self, prompt, timeout_seconds=None):
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.response


class FakeLiveFeed:
    def __init__(self, feed=None, error=None, delay=0.0):
        self.feed = feed if feed is not None else LiveFeed(aqi=None, station="Anand Vihar, Delhi")
        self.error = error
        self.delay = delay
        self.calls = 0

    async def fetch(self, lat, lon):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.feed


class FakeStationFeeds:
    """Live feed answering per latitude: a LiveFeed, an exception to raise, or a delay in seconds."""

    def __init__(self, answers, default=None):
        self.answers = answers
        self.default = default if default is not None else LiveFeed(aqi=None)
        self.calls = []

    async def fetch(self, lat, lon):
        self.calls.append((lat, lon))
        answer = self.answers.get(lat, self.default)
        if isinstance(answer, (int, float)):
            await asyncio.sleep(answer)
            return LiveFeed(aqi=999)
        if isinstance(answer, Exception):
            raise answer
        return answer


class FakePollutants:
    """Each branch returns its configured value, or raises the configured error."""

    def __init__(self, current=None, history=None, forecast=None, errors=None, delays=None):
        self.values = {
            "current": current if current is not None else PollutantReading(pm2_5=65.0, pm10=80.0, no2=30.0, co=1.2),
            "history": history if history is not None else make_samples(30, NOW - timedelta(hours=29)),
            "forecast": forecast if forecast is not None else make_samples(48, NOW + timedelta(hours=1)),
        }
        self.errors = errors or {}
        self.delays = delays or {}
        self.calls = {"current": 0, "history": 0, "forecast": 0}
        self.history_window = None

    async def _answer(self, branch):
        self.calls[branch] += 1
        if self.delays.get(branch):
            await asyncio.sleep(self.delays[branch])
        if branch in self.errors:
            raise self.errors[branch]
        return self.values[branch]

    async def current(self, lat, lon):
        return await self._answer("current")

    async def history(self, lat, lon, start, end):
        self.history_window = (start, end)
        return await self._answer("history")

    async def forecast(self, lat, lon):
        return await self._answer("forecast")

    def total_calls(self):
        return sum(self.calls.values())


def failing(source="upstream"):
    return UpstreamError(source, "HTTP 503")


@pytest.fixture
def wards():
    return {
        ward_id: WardIdentity(ward_id=ward_id, ward_name=name, latitude=lat, longitude=lon)
        for ward_id, name, lat, lon in [
            ("W01", "Anand Vihar", 28.6469, 77.3162),
            ("W02", "Ashok Vihar", 28.6952, 77.1822),
            ("W03", "Aya Nagar", 28.4707, 77.1099),
            ("W04", "Bawana", 28.7762, 77.0511),
            ("W05", "Dwarka", 28.5921, 77.0460),
        ]
    }


@pytest.fixture
def resolver(wards):
    return GeometryResolver(dict(wards))


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def valid_response():
    return json.dumps(narrative_payload("Freshly generated analysis."))
