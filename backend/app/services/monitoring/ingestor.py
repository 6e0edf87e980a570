"""Validates sensor webhooks and hands them to the session processor.

Accepts the normalized body

    {"deviceId": "...", "eventType": "NOT_DETECTED", "occurredAt": "2025-01-01T10:00:00Z"}

and the sensor vendor's shape

    {"eventType": "changeReport", "context": {"deviceType": "WoPresence",
     "deviceMac": "...", "detectionState": "NOT_DETECTED", "timeOfSample": 1735725600000}}

Vendor reports from other device types are acknowledged and ignored.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from core.errors import UnregisteredDeviceError, ValidationError
from models.base import utcnow
from models.motion_event import MotionEventType
from services.monitoring.config import MOTION_DEVICE_TYPE
from services.monitoring.processor import IngestResult, SessionProcessor
from services.monitoring.registry import DeviceRegistry

logger = logging.getLogger("carewatch.ingestor")

# Unix timestamps above this are milliseconds (year 33658 in seconds)
_MS_THRESHOLD = 10**12


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_timestamp(value: Any) -> datetime:
    """ISO-8601 string, datetime, or Unix seconds / milliseconds -> naive UTC."""
    if isinstance(value, datetime):
        return to_utc_naive(value)
    if isinstance(value, bool):
        raise ValueError("occurredAt must be a timestamp")
    if isinstance(value, str) and value.strip().lstrip("-").replace(".", "", 1).isdigit():
        value = float(value)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) >= _MS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError) as exc:
            raise ValueError(f"occurredAt out of range: {value}") from exc
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return to_utc_naive(datetime.fromisoformat(text))
        except ValueError as exc:
            raise ValueError(f"occurredAt is not ISO-8601: {value!r}") from exc
    raise ValueError("occurredAt must be an ISO-8601 string or Unix timestamp")


class MotionEventIn(BaseModel):
    model_config = {"populate_by_name": True}

    device_id: str = Field(alias="deviceId", min_length=1)
    event_type: MotionEventType = Field(alias="eventType")
    occurred_at: datetime = Field(alias="occurredAt")

    @model_validator(mode="before")
    @classmethod
    def unwrap_vendor_payload(cls, data: Any) -> Any:
        if not isinstance(data, dict) or not isinstance(data.get("context"), dict):
            return data
        ctx = data["context"]
        return {
            "deviceId": ctx.get("deviceMac") or data.get("deviceId"),
            "eventType": ctx.get("detectionState"),
            "occurredAt": ctx.get("timeOfSample"),
        }

    @field_validator("device_id")
    @classmethod
    def strip_device_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("deviceId must not be blank")
        return v

    @field_validator("event_type", mode="before")
    @classmethod
    def upper_event_type(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("occurred_at", mode="before")
    @classmethod
    def coerce_occurred_at(cls, v: Any) -> datetime:
        if v is None:
            raise ValueError("occurredAt is required")
        return parse_timestamp(v)


class EventIngestor:

    def __init__(self, registry: DeviceRegistry, processor: SessionProcessor):
        self.registry = registry
        self.processor = processor

    @staticmethod
    def is_motion_sensor(raw: Any) -> bool:
        """False only for vendor reports that name a non-presence deviceType."""
        if not isinstance(raw, dict) or not isinstance(raw.get("context"), dict):
            return True
        device_type = raw["context"].get("deviceType")
        return device_type is None or device_type == MOTION_DEVICE_TYPE

    @staticmethod
    def parse(raw: Any) -> MotionEventIn:
        try:
            return MotionEventIn.model_validate(raw)
        except PydanticValidationError as exc:
            errors = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}"
                for err in exc.errors()
            )
            raise ValidationError(errors) from exc

    async def ingest(self, raw: Any, received_at: datetime | None = None) -> IngestResult:
        if not self.is_motion_sensor(raw):
            logger.debug("Ignoring vendor report from %s device", raw["context"].get("deviceType"))
            return IngestResult(accepted=False, reason="not_motion_sensor")

        event = self.parse(raw)
        received_at = received_at or utcnow()

        try:
            device = await self.registry.get_device(event.device_id)
        except UnregisteredDeviceError:
            logger.warning(
                "Event from unregistered or inactive device %s dropped (check registry)",
                event.device_id,
            )
            return IngestResult(accepted=False, reason="unregistered_device")

        result = await self.processor.process_motion(
            device, event.event_type, event.occurred_at, received_at
        )
        logger.debug(
            "Ingested %s from %s @ %s: %s",
            event.event_type.value, device.id, event.occurred_at,
            result.transition.kind if result.transition else "no transition",
        )
        return result
