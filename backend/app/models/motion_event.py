"""Append-only log of normalized motion sensor events.

Deduplicated by (device_id, occurred_at, event_type). Rows are never updated.
"""
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, utcnow


class MotionEventType(str, enum.Enum):
    DETECTED = "DETECTED"
    NOT_DETECTED = "NOT_DETECTED"


class MotionEvent(Base):
    __tablename__ = "motion_events"

    __table_args__ = (
        UniqueConstraint(
            "device_id", "occurred_at", "event_type",
            name="uq_motion_events_device_occurred_type",
        ),
        Index("ix_motion_events_device_occurred", "device_id", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    device_id: Mapped[str] = mapped_column(String(64))
    event_type: Mapped[MotionEventType]
    occurred_at: Mapped[datetime] = mapped_column()
    received_at: Mapped[datetime] = mapped_column(default=utcnow)
    out_of_order: Mapped[bool] = mapped_column(default=False)

    def __repr__(self) -> str:
        return f"<MotionEvent {self.device_id} {self.event_type.value} @ {self.occurred_at}>"
