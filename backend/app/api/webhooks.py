"""Inbound webhooks: sensor motion events, message replies, sweep trigger."""
from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field, model_validator

from core.errors import NotFound, ValidationError
from core.security import enforce_sweep_secret, enforce_webhook_signature

logger = logging.getLogger("carewatch.webhooks")

router = APIRouter(tags=["webhooks"])


# --- Schemas ---

class AcknowledgmentIn(BaseModel):
    model_config = {"populate_by_name": True}

    from_address: str | None = Field(None, alias="fromAddress")
    patient_id: str | None = Field(None, alias="patientId")
    message: str | None = None

    @model_validator(mode="after")
    def require_sender(self):
        if not (self.from_address or "").strip() and not (self.patient_id or "").strip():
            raise ValueError("fromAddress or patientId is required")
        return self


class SweepOut(BaseModel):
    transitioned: int


def _monitoring(request: Request):
    module = getattr(request.app.state, "monitoring", None)
    if module is None:
        raise HTTPException(503, "Monitoring module not running")
    return module


# --- Endpoints ---

@router.post("/events/motion")
async def receive_motion_event(
    request: Request,
    body: bytes = Depends(enforce_webhook_signature),
):
    """Sensor webhook. 200 for accepted, duplicate and unregistered-device events."""
    module = _monitoring(request)
    try:
        payload = json.loads(body or b"null")
    except ValueError:
        raise HTTPException(400, "Body is not valid JSON")

    try:
        result = await module.ingestor.ingest(payload)
    except ValidationError as exc:
        logger.info("Rejected motion event: %s", exc)
        raise HTTPException(400, f"Invalid event: {exc}")
    return result.as_dict()


@router.post("/events/acknowledgment")
async def receive_acknowledgment(
    request: Request,
    body: bytes = Depends(enforce_webhook_signature),
):
    """Reply from a patient or caregiver messaging address."""
    module = _monitoring(request)
    try:
        data = AcknowledgmentIn.model_validate_json(body or b"{}")
    except ValueError as exc:
        raise HTTPException(400, f"Invalid acknowledgment: {exc}")

    if data.patient_id:
        result = await module.processor.acknowledge_patient(data.patient_id.strip())
    else:
        try:
            result = await module.processor.acknowledge_address(data.from_address)
        except NotFound as exc:
            logger.warning("Reply from unknown address ignored: %s", exc)
            return {"status": "unknown_sender", "session_id": None, "transition": None}
    return result.as_dict()


@router.post(
    "/internal/sweep",
    response_model=SweepOut,
    dependencies=[Depends(enforce_sweep_secret)],
)
async def trigger_sweep(request: Request):
    """Cron entry point: fires every due session timer."""
    module = _monitoring(request)
    transitioned = await module.scheduler.sweep()
    return SweepOut(transitioned=transitioned)
