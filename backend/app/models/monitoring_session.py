"""One continuous inactivity episode for a device.

State: WATCHING -> CHECKING_IN -> ESCALATED, with RESOLVED reachable from
any unresolved state. `version` is bumped by every transition and doubles as
the optimistic-lock column, so a write against a stale row raises
StaleDataError and a timer scheduled against an old version is ignored.
"""
from __future__ import annotations

import enum
from datetime import datetime, timedelta

from sqlalchemy import Index, String, text
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, utcnow


class SessionState(str, enum.Enum):
    WATCHING = "WATCHING"
    CHECKING_IN = "CHECKING_IN"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"


class ResolutionReason(str, enum.Enum):
    motion_resumed = "motion_resumed"
    acknowledged = "acknowledged"
    caregiver_acknowledged = "caregiver_acknowledged"
    manual = "manual"


class MonitoringSession(Base):
    __tablename__ = "monitoring_sessions"

    __table_args__ = (
        # At most one unresolved session per device.
        Index(
            "uq_monitoring_sessions_device_unresolved",
            "device_id",
            unique=True,
            postgresql_where=text("resolved_at IS NULL"),
            sqlite_where=text("resolved_at IS NULL"),
        ),
        Index("ix_monitoring_sessions_state", "state"),
        Index("ix_monitoring_sessions_patient", "patient_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    device_id: Mapped[str] = mapped_column(String(64))
    patient_id: Mapped[str] = mapped_column(String(64))
    state: Mapped[SessionState] = mapped_column(default=SessionState.WATCHING)
    version: Mapped[int] = mapped_column(default=1)

    inactivity_started_at: Mapped[datetime] = mapped_column()
    inactivity_threshold_seconds: Mapped[int] = mapped_column()
    escalation_delay_seconds: Mapped[int] = mapped_column()
    last_event_at: Mapped[datetime] = mapped_column()

    checkin_sent_at: Mapped[datetime | None] = mapped_column(default=None)
    escalation_started_at: Mapped[datetime | None] = mapped_column(default=None)
    resolved_at: Mapped[datetime | None] = mapped_column(default=None)
    resolution_reason: Mapped[ResolutionReason | None] = mapped_column(default=None)
    delivery_failed: Mapped[bool] = mapped_column(default=False)

    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)

    __mapper_args__ = {
        "version_id_col": version,
        "version_id_generator": False,
    }

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None

    @property
    def threshold_due_at(self) -> datetime:
        return self.inactivity_started_at + timedelta(
            seconds=self.inactivity_threshold_seconds
        )

    @property
    def escalation_due_at(self) -> datetime | None:
        if self.checkin_sent_at is None:
            return None
        return self.checkin_sent_at + timedelta(seconds=self.escalation_delay_seconds)

    def next_due_at(self) -> datetime | None:
        """When the next timer-driven transition becomes due, if any."""
        if self.state == SessionState.WATCHING:
            return self.threshold_due_at
        if self.state == SessionState.CHECKING_IN:
            return self.escalation_due_at
        return None

    def __repr__(self) -> str:
        return f"<MonitoringSession {self.id} {self.device_id} {self.state.value} v{self.version}>"
