from models.base import Base, async_session, engine, get_session, utcnow
from models.device import CareContact, ContactRole, Device
from models.motion_event import MotionEvent, MotionEventType
from models.monitoring_session import MonitoringSession, ResolutionReason, SessionState
from models.alert import ALERT_TYPE_INACTIVITY, Alert, AlertSeverity, AlertStatus
from models.notification_attempt import (
    AttemptStatus,
    NotificationAttempt,
    NotificationPurpose,
)

__all__ = [
    "Base",
    "async_session",
    "engine",
    "get_session",
    "utcnow",
    "Device",
    "CareContact",
    "ContactRole",
    "MotionEvent",
    "MotionEventType",
    "MonitoringSession",
    "SessionState",
    "ResolutionReason",
    "Alert",
    "AlertSeverity",
    "AlertStatus",
    "ALERT_TYPE_INACTIVITY",
    "NotificationAttempt",
    "NotificationPurpose",
    "AttemptStatus",
]
