"""The single write path for monitoring sessions.

Every mutation for a device runs under that device's lock, in one database
transaction. A version conflict (another worker got there first) rolls back
and the operation is re-read and re-checked; if it no longer applies it is
dropped. Side effects (publish, timers, notifications) run only after commit
and after the lock is released.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import (
    DuplicateEvent,
    InvalidTransition,
    NotFound,
    PersistenceConflict,
)
from core.keyed_lock import KeyedLock
from models.alert import Alert
from models.base import utcnow
from models.device import ContactRole
from models.motion_event import MotionEvent, MotionEventType
from models.monitoring_session import MonitoringSession, SessionState
from services.monitoring.config import TRANSITION_CHECK_IN, TRANSITION_ESCALATED
from services.monitoring.dispatcher import NotificationDispatcher
from services.monitoring.registry import DeviceInfo, DeviceRegistry
from services.monitoring.state_machine import SessionStateMachine, Transition
from services.monitoring.store import AuditStore

logger = logging.getLogger("carewatch.processor")


class TimerScheduler(Protocol):
    def schedule_fire(self, session_id: int, version: int, due_at: datetime) -> None: ...


@dataclass
class IngestResult:
    accepted: bool
    duplicate: bool = False
    out_of_order: bool = False
    transition: Transition | None = None
    reason: str | None = None

    def as_dict(self) -> dict:
        return {
            "accepted": self.accepted,
            "duplicate": self.duplicate,
            "out_of_order": self.out_of_order,
            "reason": self.reason,
            "transition": self.transition.as_dict() if self.transition else None,
        }


@dataclass
class AckResult:
    status: str                  # resolved | escalation_pending | no_session
    transition: Transition | None = None
    session_id: int | None = None

    def as_dict(self) -> dict:
        return {
            "status": self.status,
            "session_id": self.session_id,
            "transition": self.transition.as_dict() if self.transition else None,
        }


Operation = Callable[[AsyncSession], Awaitable[Transition | None]]


class SessionProcessor:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: AuditStore,
        machine: SessionStateMachine,
        registry: DeviceRegistry,
        dispatcher: NotificationDispatcher,
        conflict_retries: int = 3,
    ):
        self.session_factory = session_factory
        self.store = store
        self.machine = machine
        self.registry = registry
        self.dispatcher = dispatcher
        self.conflict_retries = max(1, conflict_retries)
        self.locks = KeyedLock()
        self.timers: TimerScheduler | None = None

    # ------------------------------------------------------------------
    # Motion events
    # ------------------------------------------------------------------

    async def process_motion(
        self,
        device: DeviceInfo,
        event_type: MotionEventType,
        occurred_at: datetime,
        received_at: datetime,
    ) -> IngestResult:
        result = IngestResult(accepted=True)

        async def op(db: AsyncSession) -> Transition | None:
            event = MotionEvent(
                device_id=device.id,
                event_type=event_type,
                occurred_at=occurred_at,
                received_at=received_at,
            )
            db.add(event)
            try:
                await db.flush()
            except IntegrityError as exc:
                raise DuplicateEvent(device.id, occurred_at, event_type.value) from exc
            transition = await self.machine.on_motion(db, device, event)
            result.out_of_order = event.out_of_order
            return transition

        try:
            result.transition = await self._run(device.id, op)
        except DuplicateEvent:
            logger.info(
                "Duplicate %s for %s @ %s ignored",
                event_type.value, device.id, occurred_at,
            )
            result.duplicate = True
        return result

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    async def fire(self, session_id: int, version: int, now: datetime | None = None) -> bool:
        """Timer callback. True if it applied a transition."""
        now = now or utcnow()
        device_id = await self._device_of(session_id)
        if device_id is None:
            return False

        async def op(db: AsyncSession) -> Transition | None:
            session = await db.get(MonitoringSession, session_id)
            if session is None:
                return None
            return await self.machine.on_timer(db, session, version, now)

        return await self._run(device_id, op) is not None

    # ------------------------------------------------------------------
    # Acknowledgments / manual override
    # ------------------------------------------------------------------

    async def acknowledge_patient(self, patient_id: str, now: datetime | None = None) -> AckResult:
        """Reply from the monitored person: resolves their latest CHECKING_IN session."""
        now = now or utcnow()
        async with self.session_factory() as db:
            session = await self.store.latest_open_session_for_patients(
                db, [patient_id], (SessionState.CHECKING_IN, SessionState.ESCALATED)
            )
        if session is None:
            return AckResult("no_session")
        if session.state == SessionState.ESCALATED:
            logger.warning(
                "Patient %s replied while session %d is escalated; alert stays active "
                "until a caregiver acknowledges",
                patient_id, session.id,
            )
            return AckResult("escalation_pending", session_id=session.id)

        session_id = session.id

        async def op(db: AsyncSession) -> Transition | None:
            current = await db.get(MonitoringSession, session_id)
            if current is None or current.state != SessionState.CHECKING_IN:
                return None
            return await self.machine.acknowledge(db, current, now)

        transition = await self._run(session.device_id, op)
        if transition is None:
            return AckResult("no_session", session_id=session_id)
        return AckResult("resolved", transition, session_id)

    async def acknowledge_caregiver(
        self, caregiver_patient_ids: list[str], acknowledged_by: str, now: datetime | None = None
    ) -> AckResult:
        """Caregiver reply: resolves the latest ESCALATED session among their patients."""
        now = now or utcnow()
        async with self.session_factory() as db:
            session = await self.store.latest_open_session_for_patients(
                db, caregiver_patient_ids, (SessionState.ESCALATED,)
            )
        if session is None:
            return AckResult("no_session")
        transition = await self._caregiver_ack(session, acknowledged_by, now)
        if transition is None:
            return AckResult("no_session", session_id=session.id)
        return AckResult("resolved", transition, session.id)

    async def acknowledge_address(self, address: str, now: datetime | None = None) -> AckResult:
        contacts = await self.registry.find_contacts(address)
        if not contacts:
            raise NotFound(f"no contact registered for {address!r}")

        patients = [c.patient_id for c in contacts if c.role == ContactRole.patient.value]
        if patients:
            for patient_id in patients:
                result = await self.acknowledge_patient(patient_id, now)
                if result.status != "no_session":
                    return result
            return AckResult("no_session")

        caregiver = contacts[0]
        patient_ids = sorted({c.patient_id for c in contacts})
        return await self.acknowledge_caregiver(
            patient_ids, caregiver.display_name or caregiver.address, now
        )

    async def acknowledge_alert(
        self, alert_id: int, acknowledged_by: str, now: datetime | None = None
    ) -> Transition:
        """Caregiver dashboard action on a specific alert."""
        now = now or utcnow()
        async with self.session_factory() as db:
            alert = await db.get(Alert, alert_id)
            session = await db.get(MonitoringSession, alert.session_id) if alert else None
        if alert is None or session is None:
            raise NotFound(f"alert {alert_id} not found")
        if session.state != SessionState.ESCALATED:
            raise InvalidTransition(
                f"alert {alert_id} session is {session.state.value}, not ESCALATED"
            )
        transition = await self._caregiver_ack(session, acknowledged_by, now)
        if transition is None:
            raise InvalidTransition(f"alert {alert_id} was already handled")
        return transition

    async def resolve_manual(self, session_id: int, now: datetime | None = None) -> Transition:
        now = now or utcnow()
        device_id = await self._device_of(session_id)
        if device_id is None:
            raise NotFound(f"session {session_id} not found")

        async def op(db: AsyncSession) -> Transition | None:
            session = await db.get(MonitoringSession, session_id)
            return await self.machine.resolve_manual(db, session, now)

        transition = await self._run(device_id, op)
        if transition is None:
            raise InvalidTransition(f"session {session_id} could not be resolved")
        return transition

    async def _caregiver_ack(
        self, session: MonitoringSession, acknowledged_by: str, now: datetime
    ) -> Transition | None:
        session_id = session.id

        async def op(db: AsyncSession) -> Transition | None:
            current = await db.get(MonitoringSession, session_id)
            if current is None or current.state != SessionState.ESCALATED:
                return None
            return await self.machine.caregiver_acknowledge(db, current, acknowledged_by, now)

        return await self._run(session.device_id, op)

    # ------------------------------------------------------------------
    # Restart recovery
    # ------------------------------------------------------------------

    async def redeliver_pending(self, before: datetime | None = None) -> int:
        """Dispatch committed edges (older than `before`) that never got a dispatch claim."""
        async with self.session_factory() as db:
            session_ids, alert_ids = await self.store.list_undelivered(db, before)
        session_ids = [s for s in session_ids if not self.dispatcher.in_flight(f"checkin:{s}")]
        alert_ids = [a for a in alert_ids if not self.dispatcher.in_flight(f"escalation:{a}")]
        for session_id in session_ids:
            logger.info("Redelivering check-in for session %d", session_id)
            await self.dispatcher.submit_check_in(session_id)
        for alert_id in alert_ids:
            logger.info("Redelivering escalation for alert %d", alert_id)
            await self.dispatcher.submit_escalation(alert_id)
        return len(session_ids) + len(alert_ids)

    # ------------------------------------------------------------------
    # Serialization point
    # ------------------------------------------------------------------

    async def _run(self, device_id: str, op: Operation) -> Transition | None:
        for attempt in range(1, self.conflict_retries + 1):
            async with self.locks.hold(device_id):
                async with self.session_factory() as db:
                    try:
                        transition = await op(db)
                        await db.commit()
                    except PersistenceConflict as exc:
                        await db.rollback()
                        logger.info(
                            "Conflict on device %s (%s), re-checking (%d/%d)",
                            device_id, exc, attempt, self.conflict_retries,
                        )
                        continue
            if transition is not None:
                await self._after_commit(transition)
            return transition

        logger.warning(
            "Operation on device %s dropped after %d conflicts",
            device_id, self.conflict_retries,
        )
        return None

    async def _after_commit(self, transition: Transition) -> None:
        await self.store.publish_transition(transition.as_dict())

        if transition.next_due_at is not None and self.timers is not None:
            self.timers.schedule_fire(
                transition.session_id, transition.version, transition.next_due_at
            )

        if transition.kind == TRANSITION_CHECK_IN:
            await self.dispatcher.submit_check_in(transition.session_id)
        elif transition.kind == TRANSITION_ESCALATED and transition.alert_id is not None:
            await self.dispatcher.submit_escalation(transition.alert_id)

    async def _device_of(self, session_id: int) -> str | None:
        async with self.session_factory() as db:
            session = await db.get(MonitoringSession, session_id)
        return session.device_id if session else None
