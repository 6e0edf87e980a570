"""
API tests: webhooks, sweep trigger, operator actions and audit reads
"""

import json

import httpx
import pytest
import pytest_asyncio

from conftest import CAREGIVER_ADDRESS, DEVICE_ID, PATIENT_ADDRESS, at, motion
from config import settings
from core.security import sign_body
from main import app
from models import get_session


@pytest_asyncio.fixture
async def client(module, seeded):
    async def session_override():
        async with seeded() as session:
            yield session

    app.dependency_overrides[get_session] = session_override
    app.state.monitoring = module
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
    del app.state.monitoring


async def escalate(client, module) -> dict:
    await client.post("/events/motion", json=motion("NOT_DETECTED", 0))
    await module.scheduler.sweep(at(31))
    await module.scheduler.sweep(at(631))
    [alert] = (await client.get("/api/monitoring/alerts")).json()
    return alert


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


# =============================================================================
# POST /events/motion
# =============================================================================

class TestMotionWebhook:

    @pytest.mark.asyncio
    async def test_accepts_event(self, client):
        resp = await client.post("/events/motion", json=motion("NOT_DETECTED", 0))

        assert resp.status_code == 200
        body = resp.json()
        assert body["accepted"] is True
        assert body["duplicate"] is False
        assert body["transition"]["transition"] == "opened"
        assert body["transition"]["to_state"] == "WATCHING"

    @pytest.mark.asyncio
    async def test_duplicate_is_200(self, client):
        await client.post("/events/motion", json=motion("NOT_DETECTED", 0))
        resp = await client.post("/events/motion", json=motion("NOT_DETECTED", 0))

        assert resp.status_code == 200
        assert resp.json()["duplicate"] is True

    @pytest.mark.asyncio
    async def test_invalid_event_is_400(self, client):
        resp = await client.post(
            "/events/motion",
            json={"deviceId": DEVICE_ID, "eventType": "WAVING", "occurredAt": "now"},
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_malformed_json_is_400(self, client):
        resp = await client.post(
            "/events/motion", content=b"{not json",
            headers={"content-type": "application/json"},
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_unregistered_device_is_200(self, client):
        resp = await client.post("/events/motion", json=motion("NOT_DETECTED", 0, "ghost"))

        assert resp.status_code == 200
        assert resp.json() == {
            "accepted": False,
            "duplicate": False,
            "out_of_order": False,
            "reason": "unregistered_device",
            "transition": None,
        }

    @pytest.mark.asyncio
    async def test_non_motion_vendor_report_is_200(self, client):
        resp = await client.post("/events/motion", json={
            "eventType": "changeReport",
            "context": {"deviceType": "WoPlugUS", "deviceMac": "AA:BB:CC:DD:EE:98", "power": "on"},
        })

        assert resp.status_code == 200
        assert resp.json()["accepted"] is False
        assert resp.json()["reason"] == "not_motion_sensor"


class TestSignature:

    @pytest.mark.asyncio
    async def test_missing_signature_is_401(self, client, monkeypatch):
        monkeypatch.setattr(settings, "WEBHOOK_SECRET", "s3cret")
        resp = await client.post("/events/motion", json=motion("NOT_DETECTED", 0))
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_bad_signature_is_401(self, client, monkeypatch):
        monkeypatch.setattr(settings, "WEBHOOK_SECRET", "s3cret")
        body = json.dumps(motion("NOT_DETECTED", 0)).encode()
        resp = await client.post(
            "/events/motion", content=body,
            headers={"x-signature": sign_body(body, "wrong")},
        )
        assert resp.status_code == 401

    @pytest.mark.asyncio
    @pytest.mark.parametrize("prefix", ["", "sha256="])
    async def test_valid_signature(self, client, monkeypatch, prefix):
        monkeypatch.setattr(settings, "WEBHOOK_SECRET", "s3cret")
        body = json.dumps(motion("NOT_DETECTED", 0)).encode()
        resp = await client.post(
            "/events/motion", content=body,
            headers={"x-signature": prefix + sign_body(body, "s3cret")},
        )
        assert resp.status_code == 200
        assert resp.json()["accepted"] is True


# =============================================================================
# POST /internal/sweep
# =============================================================================

class TestSweepTrigger:

    @pytest.mark.asyncio
    async def test_requires_secret(self, client, monkeypatch):
        monkeypatch.setattr(settings, "SWEEP_SECRET", "cron-secret")
        resp = await client.post("/internal/sweep")
        assert resp.status_code == 401

        resp = await client.post("/internal/sweep", headers={"x-cron-secret": "nope"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_cron_header(self, client, monkeypatch, gateway):
        monkeypatch.setattr(settings, "SWEEP_SECRET", "cron-secret")
        await client.post("/events/motion", json=motion("NOT_DETECTED", 0))

        resp = await client.post("/internal/sweep", headers={"x-cron-secret": "cron-secret"})

        assert resp.status_code == 200
        assert resp.json() == {"transitioned": 1}
        assert len(gateway.to(PATIENT_ADDRESS)) == 1

    @pytest.mark.asyncio
    async def test_bearer_token(self, client, monkeypatch):
        monkeypatch.setattr(settings, "SWEEP_SECRET", "cron-secret")
        resp = await client.post(
            "/internal/sweep", headers={"authorization": "Bearer cron-secret"}
        )
        assert resp.status_code == 200
        assert resp.json() == {"transitioned": 0}


# =============================================================================
# POST /events/acknowledgment
# =============================================================================

class TestAcknowledgmentWebhook:

    @pytest.mark.asyncio
    async def test_patient_reply(self, client, module):
        await client.post("/events/motion", json=motion("NOT_DETECTED", 0))
        await module.scheduler.sweep(at(31))

        resp = await client.post(
            "/events/acknowledgment",
            json={"fromAddress": PATIENT_ADDRESS, "message": "I'm fine"},
        )

        assert resp.status_code == 200
        assert resp.json()["status"] == "resolved"
        assert resp.json()["transition"]["reason"] == "acknowledged"

    @pytest.mark.asyncio
    async def test_caregiver_reply(self, client, module):
        await escalate(client, module)

        resp = await client.post("/events/acknowledgment", json={"fromAddress": CAREGIVER_ADDRESS})

        assert resp.json()["transition"]["reason"] == "caregiver_acknowledged"

    @pytest.mark.asyncio
    async def test_unknown_sender(self, client):
        resp = await client.post("/events/acknowledgment", json={"fromAddress": "+19999999999"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "unknown_sender"

    @pytest.mark.asyncio
    async def test_sender_required(self, client):
        resp = await client.post("/events/acknowledgment", json={"message": "hello"})
        assert resp.status_code == 400


# =============================================================================
# Operator actions
# =============================================================================

class TestOperatorActions:

    @pytest.mark.asyncio
    async def test_acknowledge_alert(self, client, module):
        alert = await escalate(client, module)

        resp = await client.post(
            f"/alerts/{alert['id']}/acknowledge", json={"acknowledgedBy": "Nurse Kim"}
        )
        assert resp.status_code == 200
        assert resp.json()["transition"]["reason"] == "caregiver_acknowledged"

        [alert] = (await client.get("/api/monitoring/alerts")).json()
        assert alert["status"] == "acknowledged"
        assert alert["acknowledged_by"] == "Nurse Kim"

        resp = await client.post(f"/alerts/{alert['id']}/acknowledge")
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_acknowledge_unknown_alert(self, client):
        resp = await client.post("/alerts/999/acknowledge")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_resolve_session(self, client):
        opened = await client.post("/events/motion", json=motion("NOT_DETECTED", 0))
        session_id = opened.json()["transition"]["session_id"]

        resp = await client.post(f"/sessions/{session_id}/resolve", json={"reason": "visited"})
        assert resp.status_code == 200
        assert resp.json()["transition"]["reason"] == "manual"

        resp = await client.post(f"/sessions/{session_id}/resolve")
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_resolve_unknown_session(self, client):
        resp = await client.post("/sessions/999/resolve")
        assert resp.status_code == 404


# =============================================================================
# Audit reads
# =============================================================================

class TestAuditReads:

    @pytest.mark.asyncio
    async def test_sessions_and_attempts(self, client, module):
        await client.post("/events/motion", json=motion("NOT_DETECTED", 0))
        await module.scheduler.sweep(at(31))

        sessions = (await client.get("/api/monitoring/sessions", params={"unresolved": True})).json()
        assert len(sessions) == 1
        assert sessions[0]["state"] == "CHECKING_IN"
        assert sessions[0]["version"] == 2

        one = await client.get(f"/api/monitoring/sessions/{sessions[0]['id']}")
        assert one.status_code == 200
        assert one.json()["device_id"] == DEVICE_ID

        attempts = (await client.get(f"/api/monitoring/sessions/{sessions[0]['id']}/attempts")).json()
        assert [a["purpose"] for a in attempts] == ["check_in"]
        assert attempts[0]["status"] == "sent"

    @pytest.mark.asyncio
    async def test_session_filters(self, client):
        await client.post("/events/motion", json=motion("NOT_DETECTED", 0))

        watching = await client.get("/api/monitoring/sessions", params={"state": "WATCHING"})
        escalated = await client.get("/api/monitoring/sessions", params={"state": "ESCALATED"})
        other = await client.get("/api/monitoring/sessions", params={"device_id": "other"})

        assert len(watching.json()) == 1
        assert escalated.json() == []
        assert other.json() == []

    @pytest.mark.asyncio
    async def test_unknown_session_is_404(self, client):
        assert (await client.get("/api/monitoring/sessions/999")).status_code == 404
        assert (await client.get("/api/monitoring/sessions/999/attempts")).status_code == 404

    @pytest.mark.asyncio
    async def test_alert_filters(self, client, module, gateway):
        gateway.script[CAREGIVER_ADDRESS] = ["reject"]
        await escalate(client, module)

        failed = await client.get("/api/monitoring/alerts", params={"delivery_failed": True})
        ok = await client.get("/api/monitoring/alerts", params={"delivery_failed": False})

        assert len(failed.json()) == 1
        assert failed.json()[0]["notified_targets"] == []
        assert ok.json() == []
