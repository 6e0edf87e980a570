"""
Notification delivery tests (retry, failure accounting, at-most-once)
"""

import httpx
import pytest
from sqlalchemy import select

from conftest import CAREGIVER_ADDRESS, PATIENT_ADDRESS, PATIENT_ID, at, motion
from core.errors import TransientDispatchError
from models import (
    Alert,
    AttemptStatus,
    CareContact,
    ContactRole,
    MonitoringSession,
    NotificationAttempt,
    NotificationPurpose,
    SessionState,
)
from services.monitoring.gateway import HttpGateway, RetryingSender


async def the_session(factory) -> MonitoringSession:
    async with factory() as db:
        return (await db.execute(select(MonitoringSession))).scalar_one()


async def attempts(factory, purpose=None) -> list[NotificationAttempt]:
    stmt = select(NotificationAttempt).order_by(NotificationAttempt.id)
    if purpose is not None:
        stmt = stmt.where(NotificationAttempt.purpose == purpose)
    async with factory() as db:
        return list((await db.execute(stmt)).scalars().all())


async def check_in(module, seeded) -> MonitoringSession:
    await module.ingestor.ingest(motion("NOT_DETECTED", 0))
    await module.scheduler.sweep(at(31))
    return await the_session(seeded)


async def escalate(module, seeded) -> Alert:
    await check_in(module, seeded)
    await module.scheduler.sweep(at(631))
    async with seeded() as db:
        return (await db.execute(select(Alert))).scalar_one()


# =============================================================================
# Check-in
# =============================================================================

class TestCheckIn:

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, module, seeded, gateway, sleeper):
        gateway.script[PATIENT_ADDRESS] = ["transient", "transient"]

        session = await check_in(module, seeded)

        [attempt] = await attempts(seeded)
        assert attempt.status == AttemptStatus.sent
        assert attempt.attempt_count == 3
        assert attempt.provider_message_id == "msg-1"
        assert len(sleeper.delays) == 2
        assert session.delivery_failed is False

    @pytest.mark.asyncio
    async def test_exhausted_retries_flag_session(self, module, seeded, gateway):
        gateway.script[PATIENT_ADDRESS] = ["transient"] * 3

        session = await check_in(module, seeded)

        [attempt] = await attempts(seeded)
        assert attempt.status == AttemptStatus.exhausted
        assert attempt.attempt_count == 3
        assert attempt.last_error == "HTTP 503"
        # delivery failure never rolls the state machine back
        assert session.state == SessionState.CHECKING_IN
        assert session.delivery_failed is True

    @pytest.mark.asyncio
    async def test_rejected_message_is_not_retried(self, module, seeded, gateway, sleeper):
        gateway.script[PATIENT_ADDRESS] = ["reject"]

        session = await check_in(module, seeded)

        [attempt] = await attempts(seeded)
        assert attempt.status == AttemptStatus.failed
        assert attempt.attempt_count == 1
        assert sleeper.delays == []
        assert session.delivery_failed is True

    @pytest.mark.asyncio
    async def test_edge_is_dispatched_at_most_once(self, module, seeded, gateway):
        session = await check_in(module, seeded)

        outcome = await module.dispatcher.send_check_in(session)

        assert outcome.skipped == [PATIENT_ADDRESS]
        assert len(gateway.to(PATIENT_ADDRESS)) == 1
        assert len(await attempts(seeded)) == 1

    @pytest.mark.asyncio
    async def test_uncommitted_edge_is_not_sent(self, module, seeded, gateway):
        await module.ingestor.ingest(motion("NOT_DETECTED", 0))
        session = await the_session(seeded)

        outcome = await module.dispatcher.send_check_in(session)

        assert outcome.delivered == [] and outcome.skipped == []
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_missing_patient_contact_flags_session(self, module, seeded, gateway):
        async with seeded() as db:
            contacts = (await db.execute(
                select(CareContact).where(CareContact.role == ContactRole.patient)
            )).scalars().all()
            for contact in contacts:
                contact.is_active = False
            await db.commit()

        session = await check_in(module, seeded)

        assert session.state == SessionState.CHECKING_IN
        assert session.delivery_failed is True
        assert gateway.sent == []


# =============================================================================
# Escalation
# =============================================================================

class TestEscalation:

    @pytest.mark.asyncio
    async def test_escalation_reaches_caregiver(self, module, seeded, gateway):
        alert = await escalate(module, seeded)

        assert alert.notified_targets == [CAREGIVER_ADDRESS]
        assert alert.delivery_failed is False
        [attempt] = await attempts(seeded, NotificationPurpose.escalation)
        assert attempt.alert_id == alert.id
        assert attempt.status == AttemptStatus.sent

    @pytest.mark.asyncio
    async def test_partial_failure_flags_alert(self, module, seeded, gateway):
        second = "+15550000003"
        async with seeded() as db:
            db.add(CareContact(
                patient_id=PATIENT_ID, role=ContactRole.caregiver,
                display_name="Alex", address=second,
            ))
            await db.commit()
        gateway.script[second] = ["reject"]

        alert = await escalate(module, seeded)

        assert alert.notified_targets == [CAREGIVER_ADDRESS]
        assert alert.delivery_failed is True
        assert (await the_session(seeded)).state == SessionState.ESCALATED

    @pytest.mark.asyncio
    async def test_no_caregivers_flags_alert(self, module, seeded, gateway):
        async with seeded() as db:
            contacts = (await db.execute(
                select(CareContact).where(CareContact.role == ContactRole.caregiver)
            )).scalars().all()
            for contact in contacts:
                contact.is_active = False
            await db.commit()

        alert = await escalate(module, seeded)

        assert alert.delivery_failed is True
        assert alert.notified_targets == []
        assert gateway.to(CAREGIVER_ADDRESS) == []
        assert (await the_session(seeded)).state == SessionState.ESCALATED

    @pytest.mark.asyncio
    async def test_unexpected_send_error_flags_alert(self, module, seeded, gateway):
        gateway.script[CAREGIVER_ADDRESS] = ["crash"]

        alert = await escalate(module, seeded)

        assert alert.delivery_failed is True
        [attempt] = await attempts(seeded, NotificationPurpose.escalation)
        assert attempt.status == AttemptStatus.failed
        assert attempt.last_error == "RuntimeError: gateway bug"

        # the claim stands, so later sweeps do not resend
        await module.scheduler.sweep(at(700))
        assert gateway.calls.count(CAREGIVER_ADDRESS) == 1


# =============================================================================
# Retrying sender
# =============================================================================

class TestRetryingSender:

    def test_backoff_is_bounded(self, gateway):
        sender = RetryingSender(gateway, max_attempts=10, backoff_base=1.0, backoff_max=5.0)
        for attempt in range(1, 11):
            delay = sender.backoff(attempt)
            assert 0 <= delay <= min(5.0, 2 ** (attempt - 1))

    @pytest.mark.asyncio
    async def test_on_retry_reports_each_failed_attempt(self, gateway, sleeper):
        gateway.script["+1"] = ["transient", "transient", "transient"]
        sender = RetryingSender(gateway, max_attempts=3, sleep=sleeper)
        seen = []

        async def on_retry(count, error):
            seen.append((count, error))

        report = await sender.send("+1", "hi", on_retry=on_retry)

        assert report.status == AttemptStatus.exhausted
        assert seen == [(1, "HTTP 503"), (2, "HTTP 503")]
        assert gateway.calls == ["+1"] * 3


# =============================================================================
# HTTP gateway
# =============================================================================

def _gateway(handler) -> HttpGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpGateway("https://gw.example", "secret-key", "care watch", client=client)


class TestHttpGateway:

    @pytest.mark.asyncio
    async def test_success(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["apikey"] = request.headers["apikey"]
            seen["body"] = request.read()
            return httpx.Response(201, json={"key": {"id": "ABC123"}})

        gw = _gateway(handler)
        result = await gw.send("+1 (555) 000-0001", "hello")
        await gw.close()

        assert result.delivered
        assert result.provider_message_id == "ABC123"
        assert seen["url"] == "https://gw.example/message/sendText/care%20watch"
        assert seen["apikey"] == "secret-key"
        assert b'"number":"15550000001"' in seen["body"].replace(b" ", b"")

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        gw = _gateway(lambda request: httpx.Response(502))
        with pytest.raises(TransientDispatchError):
            await gw.send("+15550000001", "hello")
        await gw.close()

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        gw = _gateway(handler)
        with pytest.raises(TransientDispatchError):
            await gw.send("+15550000001", "hello")
        await gw.close()

    @pytest.mark.asyncio
    async def test_client_error_is_final(self):
        gw = _gateway(lambda request: httpx.Response(400, text="bad number"))
        result = await gw.send("+15550000001", "hello")
        await gw.close()

        assert not result.delivered
        assert "400" in result.error

    @pytest.mark.asyncio
    async def test_undecodable_response_is_final(self):
        def handler(request):
            raise httpx.DecodingError("bad gzip", request=request)

        gw = _gateway(handler)
        result = await gw.send("+15550000001", "hello")
        await gw.close()

        assert not result.delivered
        assert result.error.startswith("DecodingError")
