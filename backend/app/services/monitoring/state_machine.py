"""Inactivity episode lifecycle.

    (none) --NOT_DETECTED--> WATCHING --threshold--> CHECKING_IN --delay--> ESCALATED
                               |                        |                      |
                               +------- DETECTED / ack / caregiver ack / manual -----> RESOLVED

Every method here runs inside one database transaction while the caller
holds the device's serialization lock. Nothing is sent from here: the
returned Transition tells the caller which side effects to run after commit.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import InvalidTransition
from models.alert import Alert, AlertSeverity, AlertStatus
from models.motion_event import MotionEvent, MotionEventType
from models.monitoring_session import MonitoringSession, ResolutionReason, SessionState
from services.monitoring.config import (
    ALERT_MESSAGE,
    TRANSITION_CHECK_IN,
    TRANSITION_ESCALATED,
    TRANSITION_OPENED,
    TRANSITION_RESOLVED,
)
from services.monitoring.registry import DeviceInfo
from services.monitoring.store import AuditStore

logger = logging.getLogger("carewatch.state_machine")

ALLOWED: dict[SessionState, set[SessionState]] = {
    SessionState.WATCHING: {SessionState.CHECKING_IN, SessionState.RESOLVED},
    SessionState.CHECKING_IN: {SessionState.ESCALATED, SessionState.RESOLVED},
    SessionState.ESCALATED: {SessionState.RESOLVED},
    SessionState.RESOLVED: set(),
}


@dataclass
class Transition:
    kind: str
    session_id: int
    device_id: str
    patient_id: str
    from_state: SessionState | None
    to_state: SessionState
    version: int
    at: datetime
    reason: ResolutionReason | None = None
    alert_id: int | None = None
    next_due_at: datetime | None = None

    def as_dict(self) -> dict:
        return {
            "transition": self.kind,
            "session_id": self.session_id,
            "device_id": self.device_id,
            "patient_id": self.patient_id,
            "from_state": self.from_state.value if self.from_state else None,
            "to_state": self.to_state.value,
            "version": self.version,
            "at": self.at.isoformat(),
            "reason": self.reason.value if self.reason else None,
            "alert_id": self.alert_id,
        }


class SessionStateMachine:

    def __init__(self, store: AuditStore):
        self.store = store

    # ------------------------------------------------------------------
    # Motion events
    # ------------------------------------------------------------------

    async def on_motion(
        self, db: AsyncSession, device: DeviceInfo, event: MotionEvent
    ) -> Transition | None:
        open_session = await self.store.get_open_session(db, device.id)
        latest = open_session or await self.store.get_latest_session(db, device.id)

        if latest is not None and event.occurred_at < latest.last_event_at:
            # Older than what this device already applied: log only.
            event.out_of_order = True
            logger.info(
                "Out-of-order %s for %s (occurred %s < clock %s), recorded only",
                event.event_type.value, device.id, event.occurred_at, latest.last_event_at,
            )
            return None

        if event.event_type == MotionEventType.DETECTED:
            if open_session is None:
                return None
            return await self._resolve(
                db, open_session, ResolutionReason.motion_resumed, event.occurred_at
            )

        if open_session is not None:
            open_session.last_event_at = event.occurred_at
            await self.store.save_session(db, open_session)
            return None

        session = MonitoringSession(
            device_id=device.id,
            patient_id=device.patient_id,
            state=SessionState.WATCHING,
            version=1,
            inactivity_started_at=event.occurred_at,
            inactivity_threshold_seconds=device.inactivity_threshold_seconds,
            escalation_delay_seconds=device.escalation_delay_seconds,
            last_event_at=event.occurred_at,
        )
        await self.store.save_session(db, session)
        logger.info(
            "Session %d opened: device=%s threshold=%ds",
            session.id, device.id, device.inactivity_threshold_seconds,
        )
        return Transition(
            kind=TRANSITION_OPENED,
            session_id=session.id,
            device_id=session.device_id,
            patient_id=session.patient_id,
            from_state=None,
            to_state=SessionState.WATCHING,
            version=session.version,
            at=event.occurred_at,
            next_due_at=session.threshold_due_at,
        )

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    async def on_timer(
        self,
        db: AsyncSession,
        session: MonitoringSession,
        version: int,
        now: datetime,
    ) -> Transition | None:
        """Apply the due transition, if `version` is still current and the time has come."""
        if not session.is_open or session.version != version:
            logger.debug(
                "Stale timer for session %d (v%d, current v%d)",
                session.id, version, session.version,
            )
            return None

        if session.state == SessionState.WATCHING and now >= session.threshold_due_at:
            self._advance(session, SessionState.CHECKING_IN)
            session.checkin_sent_at = now
            await self.store.save_session(db, session)
            logger.info("Session %d -> CHECKING_IN (device=%s)", session.id, session.device_id)
            return self._transition(
                TRANSITION_CHECK_IN, session, SessionState.WATCHING, now,
                next_due_at=session.escalation_due_at,
            )

        due = session.escalation_due_at
        if session.state == SessionState.CHECKING_IN and due is not None and now >= due:
            self._advance(session, SessionState.ESCALATED)
            session.escalation_started_at = now
            await self.store.save_session(db, session)

            alert = Alert(
                session_id=session.id,
                patient_id=session.patient_id,
                device_id=session.device_id,
                severity=AlertSeverity.high,
                status=AlertStatus.active,
                message=ALERT_MESSAGE.format(
                    minutes=session.escalation_delay_seconds // 60,
                    device=session.device_id,
                ),
                notified_targets=[],
                escalated_at=now,
            )
            await self.store.save_alert(db, alert)
            logger.warning(
                "Session %d -> ESCALATED, alert %d created (device=%s patient=%s)",
                session.id, alert.id, session.device_id, session.patient_id,
            )
            return self._transition(
                TRANSITION_ESCALATED, session, SessionState.CHECKING_IN, now,
                alert_id=alert.id,
            )

        return None

    # ------------------------------------------------------------------
    # Acknowledgments / overrides
    # ------------------------------------------------------------------

    async def acknowledge(
        self, db: AsyncSession, session: MonitoringSession, now: datetime
    ) -> Transition:
        """The monitored person answered the check-in."""
        if session.state != SessionState.CHECKING_IN:
            raise InvalidTransition(
                f"session {session.id} is {session.state.value}, not CHECKING_IN"
            )
        return await self._resolve(db, session, ResolutionReason.acknowledged, now)

    async def caregiver_acknowledge(
        self,
        db: AsyncSession,
        session: MonitoringSession,
        acknowledged_by: str,
        now: datetime,
    ) -> Transition:
        if session.state != SessionState.ESCALATED:
            raise InvalidTransition(
                f"session {session.id} is {session.state.value}, not ESCALATED"
            )
        alert = await self.store.get_alert_for_session(db, session.id)
        if alert is not None:
            alert.status = AlertStatus.acknowledged
            alert.acknowledged_by = acknowledged_by
            alert.acknowledged_at = now
            await self.store.save_alert(db, alert)
        return await self._resolve(
            db, session, ResolutionReason.caregiver_acknowledged, now
        )

    async def resolve_manual(
        self, db: AsyncSession, session: MonitoringSession, now: datetime
    ) -> Transition:
        if not session.is_open:
            raise InvalidTransition(f"session {session.id} is already resolved")
        return await self._resolve(db, session, ResolutionReason.manual, now)

    # ------------------------------------------------------------------

    async def _resolve(
        self,
        db: AsyncSession,
        session: MonitoringSession,
        reason: ResolutionReason,
        at: datetime,
    ) -> Transition:
        previous = session.state
        self._advance(session, SessionState.RESOLVED)
        session.resolved_at = at
        session.resolution_reason = reason
        # last_event_at tracks the sensor clock; server-time resolutions leave it alone
        if reason == ResolutionReason.motion_resumed and at > session.last_event_at:
            session.last_event_at = at
        await self.store.save_session(db, session)

        if previous == SessionState.ESCALATED and reason != ResolutionReason.caregiver_acknowledged:
            alert = await self.store.get_alert_for_session(db, session.id)
            if alert is not None and alert.status == AlertStatus.active:
                alert.status = AlertStatus.resolved
                await self.store.save_alert(db, alert)

        logger.info(
            "Session %d %s -> RESOLVED (%s, device=%s)",
            session.id, previous.value, reason.value, session.device_id,
        )
        return self._transition(TRANSITION_RESOLVED, session, previous, at, reason=reason)

    @staticmethod
    def _advance(session: MonitoringSession, to_state: SessionState) -> None:
        if to_state not in ALLOWED[session.state]:
            raise InvalidTransition(
                f"session {session.id}: {session.state.value} -> {to_state.value} not allowed"
            )
        session.state = to_state
        session.version += 1

    @staticmethod
    def _transition(
        kind: str,
        session: MonitoringSession,
        from_state: SessionState,
        at: datetime,
        **extra,
    ) -> Transition:
        return Transition(
            kind=kind,
            session_id=session.id,
            device_id=session.device_id,
            patient_id=session.patient_id,
            from_state=from_state,
            to_state=session.state,
            version=session.version,
            at=at,
            **extra,
        )
