"""Check-in and escalation delivery.

Runs after the transition has committed and outside the device lock. A
failed delivery never touches session state; it only raises the
delivery_failed flag so operators see it in the audit trail.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import PersistenceConflict, UnregisteredDeviceError
from models.alert import Alert
from models.device import ContactRole
from models.monitoring_session import MonitoringSession
from models.notification_attempt import (
    AttemptStatus,
    NotificationAttempt,
    NotificationPurpose,
)
from services.monitoring.config import (
    CHECK_IN_MESSAGE,
    DEFAULT_LOCATION,
    DEFAULT_PATIENT_NAME,
    ESCALATION_MESSAGE,
)
from services.monitoring.gateway import RetryingSender, SendReport
from services.monitoring.registry import DeviceRegistry
from services.monitoring.store import AuditStore

logger = logging.getLogger("carewatch.dispatcher")


@dataclass
class Outcome:
    purpose: NotificationPurpose
    delivered: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return bool(self.delivered) and not self.failed


class NotificationDispatcher:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: DeviceRegistry,
        store: AuditStore,
        sender: RetryingSender,
        channel: str = "whatsapp",
        background: bool = True,
        conflict_retries: int = 3,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.store = store
        self.sender = sender
        self.channel = channel
        self.background = background
        self.conflict_retries = conflict_retries
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Entry points used by the session processor
    # ------------------------------------------------------------------

    async def submit_check_in(self, session_id: int) -> None:
        await self._submit(self._check_in_by_id(session_id), f"checkin:{session_id}")

    async def submit_escalation(self, alert_id: int) -> None:
        await self._submit(self._escalation_by_id(alert_id), f"escalation:{alert_id}")

    async def drain(self) -> None:
        """Wait for every in-flight background dispatch."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def in_flight(self, name: str) -> bool:
        return any(task.get_name() == f"dispatch:{name}" for task in self._tasks)

    async def _submit(self, coro, name: str) -> None:
        if not self.background:
            await self._guarded(coro)
            return
        task = asyncio.create_task(self._guarded(coro), name=f"dispatch:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guarded(self, coro) -> None:
        try:
            await coro
        except Exception as exc:
            logger.error("Dispatch error: %s", exc, exc_info=True)

    async def _check_in_by_id(self, session_id: int) -> None:
        async with self.session_factory() as db:
            session = await db.get(MonitoringSession, session_id)
        if session is None:
            logger.warning("Check-in for unknown session %d", session_id)
            return
        await self.send_check_in(session)

    async def _escalation_by_id(self, alert_id: int) -> None:
        async with self.session_factory() as db:
            alert = await db.get(Alert, alert_id)
        if alert is None:
            logger.warning("Escalation for unknown alert %d", alert_id)
            return
        await self.send_escalation(alert)

    # ------------------------------------------------------------------
    # Check-in / escalation
    # ------------------------------------------------------------------

    async def send_check_in(self, session: MonitoringSession) -> Outcome:
        outcome = Outcome(NotificationPurpose.check_in)
        if session.checkin_sent_at is None:
            logger.warning("Session %d has no committed check-in edge, not sending", session.id)
            return outcome

        contacts = await self.registry.get_contacts(session.patient_id, ContactRole.patient)
        if not contacts:
            logger.error(
                "No patient contact for %s, check-in for session %d cannot be delivered",
                session.patient_id, session.id,
            )
            await self._flag_session(session.id)
            return outcome

        location = await self._location(session.device_id)
        for contact in contacts:
            message = CHECK_IN_MESSAGE.format(
                name=contact.display_name or DEFAULT_PATIENT_NAME,
                location=location,
            )
            status = await self._deliver(
                session.id, None, NotificationPurpose.check_in, contact.address, message
            )
            self._tally(outcome, contact.address, status)

        if outcome.failed:
            await self._flag_session(session.id)
        logger.info(
            "Check-in session=%d delivered=%d failed=%d skipped=%d",
            session.id, len(outcome.delivered), len(outcome.failed), len(outcome.skipped),
        )
        return outcome

    async def send_escalation(self, alert: Alert) -> Outcome:
        outcome = Outcome(NotificationPurpose.escalation)
        if alert.escalated_at is None:
            logger.warning("Alert %d has no committed escalation edge, not sending", alert.id)
            return outcome

        async with self.session_factory() as db:
            session = await db.get(MonitoringSession, alert.session_id)
        minutes = (session.escalation_delay_seconds // 60) if session else 0

        caregivers = await self.registry.get_contacts(alert.patient_id, ContactRole.caregiver)
        patients = await self.registry.get_contacts(alert.patient_id, ContactRole.patient)
        patient_name = next(
            (c.display_name for c in patients if c.display_name), alert.patient_id
        )
        location = await self._location(alert.device_id)
        message = ESCALATION_MESSAGE.format(
            patient=patient_name, minutes=minutes, location=location
        )

        if not caregivers:
            logger.error(
                "No caregivers for %s, escalation alert %d cannot be delivered",
                alert.patient_id, alert.id,
            )
            await self._record_alert_delivery(alert.id, [], failed=True)
            return outcome

        for contact in caregivers:
            status = await self._deliver(
                alert.session_id, alert.id, NotificationPurpose.escalation,
                contact.address, message,
            )
            self._tally(outcome, contact.address, status)

        if outcome.delivered or outcome.failed:
            await self._record_alert_delivery(
                alert.id, outcome.delivered, failed=bool(outcome.failed)
            )
        logger.info(
            "Escalation alert=%d delivered=%d failed=%d skipped=%d",
            alert.id, len(outcome.delivered), len(outcome.failed), len(outcome.skipped),
        )
        return outcome

    # ------------------------------------------------------------------
    # Delivery with attempt accounting
    # ------------------------------------------------------------------

    async def _deliver(
        self,
        session_id: int,
        alert_id: int | None,
        purpose: NotificationPurpose,
        target: str,
        message: str,
    ) -> AttemptStatus | None:
        """Claim the (edge, target) and send. None if someone already claimed it."""
        async with self.session_factory() as db:
            attempt = NotificationAttempt(
                session_id=session_id,
                alert_id=alert_id,
                purpose=purpose,
                channel=self.channel,
                target=target,
                status=AttemptStatus.retrying,
                attempt_count=0,
            )
            if not await self.store.append_attempt(db, attempt):
                logger.info(
                    "%s for session %d -> %s already dispatched, skipping",
                    purpose.value, session_id, target,
                )
                return None
            await db.commit()
            attempt_id = attempt.id

        async def on_retry(count: int, error: str) -> None:
            await self._update_attempt(
                attempt_id, status=AttemptStatus.retrying, attempt_count=count, last_error=error
            )

        try:
            report = await self.sender.send(target, message, on_retry=on_retry)
        except Exception as exc:
            logger.error(
                "%s for session %d -> %s failed unexpectedly: %s",
                purpose.value, session_id, target, exc, exc_info=True,
            )
            report = SendReport(
                AttemptStatus.failed, 1, last_error=f"{type(exc).__name__}: {exc}"
            )
        await self._update_attempt(
            attempt_id,
            status=report.status,
            attempt_count=report.attempts,
            last_error=report.last_error,
            provider_message_id=report.provider_message_id,
        )
        return report.status

    async def _update_attempt(self, attempt_id: int, **values) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(NotificationAttempt)
                .where(NotificationAttempt.id == attempt_id)
                .values(**values)
            )
            await db.commit()

    @staticmethod
    def _tally(outcome: Outcome, target: str, status: AttemptStatus | None) -> None:
        if status is None:
            outcome.skipped.append(target)
        elif status == AttemptStatus.sent:
            outcome.delivered.append(target)
        else:
            outcome.failed.append(target)

    # ------------------------------------------------------------------
    # Delivery flags
    # ------------------------------------------------------------------

    async def _flag_session(self, session_id: int) -> None:
        async with self.session_factory() as db:
            await self.store.mark_session_delivery_failed(db, session_id)
            await db.commit()
        logger.warning("Session %d flagged delivery_failed", session_id)

    async def _record_alert_delivery(
        self, alert_id: int, delivered: list[str], failed: bool
    ) -> None:
        for _ in range(self.conflict_retries):
            async with self.session_factory() as db:
                alert = await db.get(Alert, alert_id)
                if alert is None:
                    return
                targets = list(alert.notified_targets or [])
                targets.extend(t for t in delivered if t not in targets)
                alert.notified_targets = targets
                if failed:
                    alert.delivery_failed = True
                try:
                    await self.store.save_alert(db, alert)
                    await db.commit()
                except PersistenceConflict:
                    await db.rollback()
                    continue
            if failed:
                logger.warning("Alert %d flagged delivery_failed", alert_id)
            return
        logger.error("Alert %d delivery record lost to repeated conflicts", alert_id)

    async def _location(self, device_id: str) -> str:
        try:
            device = await self.registry.get_device(device_id)
        except UnregisteredDeviceError:
            return DEFAULT_LOCATION
        return device.location or device.name or DEFAULT_LOCATION

