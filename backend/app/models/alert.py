"""Caregiver alert, created only when a session escalates."""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import JSON, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, utcnow


class AlertSeverity(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class AlertStatus(str, enum.Enum):
    active = "active"
    acknowledged = "acknowledged"
    resolved = "resolved"


ALERT_TYPE_INACTIVITY = "inactivity_escalation"


class Alert(Base):
    __tablename__ = "alerts"

    __table_args__ = (
        Index("ix_alerts_status", "status"),
        Index("ix_alerts_patient_created", "patient_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    session_id: Mapped[int] = mapped_column(
        ForeignKey("monitoring_sessions.id", ondelete="CASCADE"), unique=True
    )
    patient_id: Mapped[str] = mapped_column(String(64))
    device_id: Mapped[str] = mapped_column(String(64))

    alert_type: Mapped[str] = mapped_column(String(40), default=ALERT_TYPE_INACTIVITY)
    severity: Mapped[AlertSeverity] = mapped_column(default=AlertSeverity.high)
    status: Mapped[AlertStatus] = mapped_column(default=AlertStatus.active)
    message: Mapped[str] = mapped_column(String(500), default="")

    notified_targets: Mapped[list] = mapped_column(JSON, default=list)
    delivery_failed: Mapped[bool] = mapped_column(default=False)
    acknowledged_by: Mapped[str | None] = mapped_column(String(100), default=None)
    acknowledged_at: Mapped[datetime | None] = mapped_column(default=None)

    version: Mapped[int] = mapped_column(default=1)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    escalated_at: Mapped[datetime | None] = mapped_column(default=None)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Alert {self.id} session={self.session_id} {self.severity.value} {self.status.value}>"
