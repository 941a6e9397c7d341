"""Tests for the FastAPI control surface."""
import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from config.settings import Settings
from core.runtime import EngineRuntime
from models.schemas import CampaignStatus, CampaignType

from conftest import seed_campaign


@pytest.fixture
def runtime(store, senders, clock) -> EngineRuntime:
    return EngineRuntime(settings=Settings(), store=store, senders=senders, clock=clock)


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime, background=False)) as c:
        yield c


@pytest.fixture
def seeded(store, client):
    client.portal.call(seed_campaign, store, 2)


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["dispatcher_busy"] is False
    assert "EMAIL_SMTP" in body["channels"]


def test_start_trigger_and_stats(client, seeded, runtime):
    resp = client.post("/api/v1/campaigns/camp1/start")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ACTIVE"

    resp = client.post("/api/v1/campaigns/camp1/trigger")
    assert resp.status_code == 200
    assert resp.json() == {"found": 2, "enqueued": 2, "already_queued": 0, "campaign_id": "camp1"}

    assert client.get("/api/v1/queue/stats").json()["pending"] == 2
    assert client.get("/api/v1/queue/stats", params={"tenant_id": "other"}).json()["total"] == 0

    client.portal.call(runtime.dispatcher.tick)
    stats = client.get("/api/v1/campaigns/camp1/stats").json()
    assert stats["status"] == "COMPLETED"
    assert stats["recipients"] == {"COMPLETED": 2}
    assert stats["attempts"] == {"SENT": 2}


def test_start_scheduled_campaign_with_time(client, store, clock, runtime):
    campaign, [recipient] = client.portal.call(seed_campaign, store)
    client.portal.call(store.save_campaign, campaign.model_copy(update={"type": CampaignType.SCHEDULED}))

    resp = client.post("/api/v1/campaigns/camp1/start", json={"scheduledAt": "2026-02-01T08:00:00"})
    assert resp.status_code == 200
    stored = client.portal.call(store.get_recipient, recipient.id)
    assert stored.next_action_at.isoformat() == "2026-02-01T08:00:00+00:00"


def test_pause(client, seeded, store):
    client.post("/api/v1/campaigns/camp1/start")
    resp = client.post("/api/v1/campaigns/camp1/pause")
    assert resp.status_code == 200
    assert resp.json()["status"] == "PAUSED"
    assert client.portal.call(store.get_campaign, "camp1").status == CampaignStatus.PAUSED


def test_errors_map_to_status_codes(client, seeded):
    assert client.post("/api/v1/campaigns/missing/start").status_code == 404
    assert client.get("/api/v1/campaigns/missing/stats").status_code == 404
    assert client.post("/api/v1/campaigns/camp1/pause").status_code == 400
    assert client.post("/api/v1/campaigns/camp1/trigger").status_code == 400

    client.post("/api/v1/campaigns/camp1/start")
    resp = client.post("/api/v1/campaigns/camp1/start")
    assert resp.status_code == 400
    assert "ACTIVE" in resp.json()["detail"]
