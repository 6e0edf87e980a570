"""Persistence for sessions, alerts and notification attempts.

Session and alert writes are version-checked by SQLAlchemy; a stale write
surfaces as PersistenceConflict so the caller can re-read and re-check.
Transitions are also published to Redis for dashboards and the WS bridge.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime

from redis.asyncio import Redis
from sqlalchemy import and_, desc, exists, select, true, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from core.errors import PersistenceConflict
from models.alert import Alert
from models.monitoring_session import MonitoringSession, SessionState
from models.notification_attempt import NotificationAttempt, NotificationPurpose
from services.monitoring.config import REDIS_CHANNEL_TRANSITIONS

logger = logging.getLogger("carewatch.store")


class AuditStore:

    def __init__(self, redis: Redis | None = None):
        self.redis = redis

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def save_session(self, db: AsyncSession, session: MonitoringSession) -> None:
        # A failed flush expires the instance; read identifiers beforehand.
        session_id, device_id = session.id, session.device_id
        db.add(session)
        try:
            await db.flush()
        except StaleDataError as exc:
            raise PersistenceConflict("session", session_id) from exc
        except IntegrityError as exc:
            # Lost the race to open the device's single unresolved session.
            raise PersistenceConflict("session", device_id) from exc

    async def save_alert(self, db: AsyncSession, alert: Alert) -> None:
        alert_id = alert.id
        db.add(alert)
        try:
            await db.flush()
        except StaleDataError as exc:
            raise PersistenceConflict("alert", alert_id) from exc

    async def append_attempt(self, db: AsyncSession, attempt: NotificationAttempt) -> bool:
        """Insert a dispatch claim. False if this (session, purpose, target) exists."""
        db.add(attempt)
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            return False
        return True

    async def mark_session_delivery_failed(self, db: AsyncSession, session_id: int) -> None:
        # Flag only; not a transition, so the version is left alone.
        await db.execute(
            update(MonitoringSession)
            .where(MonitoringSession.id == session_id)
            .values(delivery_failed=True)
            .execution_options(synchronize_session=False)
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_open_session(self, db: AsyncSession, device_id: str) -> MonitoringSession | None:
        stmt = select(MonitoringSession).where(
            and_(
                MonitoringSession.device_id == device_id,
                MonitoringSession.resolved_at.is_(None),
            )
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_latest_session(self, db: AsyncSession, device_id: str) -> MonitoringSession | None:
        stmt = (
            select(MonitoringSession)
            .where(MonitoringSession.device_id == device_id)
            .order_by(desc(MonitoringSession.last_event_at), desc(MonitoringSession.id))
            .limit(1)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_alert_for_session(self, db: AsyncSession, session_id: int) -> Alert | None:
        result = await db.execute(select(Alert).where(Alert.session_id == session_id))
        return result.scalar_one_or_none()

    async def latest_open_session_for_patients(
        self,
        db: AsyncSession,
        patient_ids: list[str],
        states: tuple[SessionState, ...],
    ) -> MonitoringSession | None:
        if not patient_ids:
            return None
        stmt = (
            select(MonitoringSession)
            .where(
                and_(
                    MonitoringSession.patient_id.in_(patient_ids),
                    MonitoringSession.resolved_at.is_(None),
                    MonitoringSession.state.in_(states),
                )
            )
            .order_by(desc(MonitoringSession.inactivity_started_at), desc(MonitoringSession.id))
            .limit(1)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_due_sessions(self, db: AsyncSession, now: datetime) -> list[tuple[int, int]]:
        """(session_id, version) of every unresolved session whose timer is due."""
        stmt = (
            select(MonitoringSession)
            .where(
                and_(
                    MonitoringSession.resolved_at.is_(None),
                    MonitoringSession.state.in_(
                        (SessionState.WATCHING, SessionState.CHECKING_IN)
                    ),
                )
            )
            .order_by(MonitoringSession.id)
        )
        result = await db.execute(stmt)
        due: list[tuple[int, int]] = []
        for session in result.scalars().all():
            due_at = session.next_due_at()
            if due_at is not None and due_at <= now:
                due.append((session.id, session.version))
        return due

    async def list_undelivered(
        self, db: AsyncSession, before: datetime | None = None
    ) -> tuple[list[int], list[int]]:
        """Committed edges with no dispatch claim: (check-in session ids, escalation alert ids).

        `before` limits the result to edges committed strictly earlier.
        """
        no_checkin = ~exists().where(
            and_(
                NotificationAttempt.session_id == MonitoringSession.id,
                NotificationAttempt.purpose == NotificationPurpose.check_in,
            )
        )
        checkins = await db.execute(
            select(MonitoringSession.id).where(
                and_(
                    MonitoringSession.resolved_at.is_(None),
                    MonitoringSession.state == SessionState.CHECKING_IN,
                    MonitoringSession.checkin_sent_at.is_not(None),
                    MonitoringSession.checkin_sent_at < before if before else true(),
                    MonitoringSession.delivery_failed == False,  # noqa: E712
                    no_checkin,
                )
            )
        )
        no_escalation = ~exists().where(
            and_(
                NotificationAttempt.alert_id == Alert.id,
                NotificationAttempt.purpose == NotificationPurpose.escalation,
            )
        )
        escalations = await db.execute(
            select(Alert.id)
            .join(MonitoringSession, MonitoringSession.id == Alert.session_id)
            .where(
                and_(
                    MonitoringSession.resolved_at.is_(None),
                    MonitoringSession.state == SessionState.ESCALATED,
                    Alert.escalated_at.is_not(None),
                    Alert.escalated_at < before if before else true(),
                    Alert.delivery_failed == False,  # noqa: E712
                    no_escalation,
                )
            )
        )
        return list(checkins.scalars().all()), list(escalations.scalars().all())

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish_transition(self, payload: dict) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.publish(
                REDIS_CHANNEL_TRANSITIONS,
                json.dumps({"type": "monitoring_transition", **payload}, default=str),
            )
        except Exception as exc:
            logger.warning("Transition publish failed: %s", exc)
