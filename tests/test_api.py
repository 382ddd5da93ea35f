from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from conftest import NOW, FakeGenerator, FakeLiveFeed, FakePollutants
from wardaqi.config import Settings
from wardaqi.main import create_app
from wardaqi.models import PollutantReading
from wardaqi.narrative import FreshnessPolicy, NarrativeService
from wardaqi.orchestrator import WardReportService
from wardaqi.report_cache import ReportCache
from wardaqi.services import Services
from wardaqi.upstream import UpstreamGatherer


class FakeQueue:
    def __init__(self, accept=True):
        self.accept = accept
        self.messages = []

    async def publish(self, message):
        self.messages.append(message)
        return self.accept


@pytest.fixture
def queue():
    return FakeQueue()


@pytest.fixture
def services(resolver, store, queue, valid_response):
    reports = WardReportService(
        resolver,
        UpstreamGatherer(FakeLiveFeed(), FakePollutants(), timeout_seconds=0.5, now=lambda: NOW),
        NarrativeService(store, FakeGenerator(response=valid_response), FreshnessPolicy(timedelta(hours=24)), now=lambda: NOW),
        store,
        ReportCache(),
    )
    return Services(
        settings=Settings(refresh_slots_per_day=2),
        resolver=resolver,
        store=store,
        reports=reports,
        refresh_job=None,
        queue=queue,
    )


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as client:
        yield client


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert "message" in response.json()


def test_ward_analysis(client):
    response = client.get("/api/ward-analysis/W01")
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["ward"] == "Anand Vihar"
    assert data["current_aqi"] == 117
    assert data["cigarettes_count"] == "3.0"
    assert data["aqi_category"] == {"level": "Moderate", "color": "#ffff00"}
    assert data["analysis"]["impact_summary"] == "Freshly generated analysis."


def test_unknown_ward_is_404(client):
    response = client.get("/api/ward-analysis/W999")
    assert response.status_code == 404
    assert response.json() == {"success": False, "message": "Ward 'W999' not found"}


def test_blank_ward_is_400(client):
    response = client.get("/api/ward-analysis/%20")
    assert response.status_code == 400
    assert response.json()["success"] is False


def test_list_wards_in_canonical_order(client):
    response = client.get("/api/wards")
    assert response.status_code == 200
    assert [w["ward_id"] for w in response.json()] == ["W01", "W02", "W03", "W04", "W05"]


def test_wards_overview(client, store):
    store.pollutants["W02"] = PollutantReading(pm2_5=65.0)

    response = client.get("/api/wards/overview")

    assert response.status_code == 200
    data = response.json()
    assert [w["ward_id"] for w in data] == ["W01", "W02", "W03", "W04", "W05"]
    assert data[0]["ward_name"] == "Anand Vihar"
    # every station is up but publishes no index; only W02 has a stored snapshot
    assert data[1]["aqi"] == 117
    assert data[1]["aqi_category"]["level"] == "Moderate"
    assert data[1]["source"] == "snapshot"
    assert data[0]["aqi"] is None
    assert data[0]["aqi_category"]["level"] == "Unknown"


def test_health_reports_store_state(client, store):
    assert client.get("/api/health").json()["status"] == "ok"
    store.healthy = False
    data = client.get("/api/health").json()
    assert data["status"] == "degraded"
    assert data["influxdb"] == "unavailable"


def test_enqueue_refresh_slot(client, queue):
    response = client.post("/api/refresh/slots/1")
    assert response.status_code == 202
    # 5 wards over 2 slots: 3 + 2
    assert response.json() == {"start": 3, "count": 2}
    assert queue.messages[0].start == 3


def test_enqueue_refresh_slot_out_of_range(client, queue):
    assert client.post("/api/refresh/slots/2").status_code == 400
    assert client.post("/api/refresh/slots/-1").status_code == 422
    assert queue.messages == []


def test_enqueue_refresh_publish_failure(client, queue):
    queue.accept = False
    assert client.post("/api/refresh/slots/0").status_code == 503
