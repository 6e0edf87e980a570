"""Per-target delivery record for one transition edge.

The unique (session_id, purpose, target) key is the dispatch claim: whoever
inserts the row owns the send, so an edge is never notified twice.
"""
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, utcnow


class NotificationPurpose(str, enum.Enum):
    check_in = "check_in"
    escalation = "escalation"


class AttemptStatus(str, enum.Enum):
    sent = "sent"
    failed = "failed"
    retrying = "retrying"
    exhausted = "exhausted"


class NotificationAttempt(Base):
    __tablename__ = "notification_attempts"

    __table_args__ = (
        UniqueConstraint(
            "session_id", "purpose", "target",
            name="uq_notification_attempts_session_purpose_target",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    session_id: Mapped[int] = mapped_column(
        ForeignKey("monitoring_sessions.id", ondelete="CASCADE")
    )
    alert_id: Mapped[int | None] = mapped_column(
        ForeignKey("alerts.id", ondelete="CASCADE"), default=None
    )
    purpose: Mapped[NotificationPurpose]
    channel: Mapped[str] = mapped_column(String(20))
    target: Mapped[str] = mapped_column(String(100))
    status: Mapped[AttemptStatus] = mapped_column(default=AttemptStatus.retrying)
    attempt_count: Mapped[int] = mapped_column(default=0)
    last_error: Mapped[str | None] = mapped_column(String(500), default=None)
    provider_message_id: Mapped[str | None] = mapped_column(String(100), default=None)

    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return (
            f"<NotificationAttempt {self.purpose.value} -> {self.target} "
            f"{self.status.value} x{self.attempt_count}>"
        )
