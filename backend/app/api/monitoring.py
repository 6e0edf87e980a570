"""Operator API: audit reads over sessions / alerts / attempts, plus
caregiver acknowledgment and manual resolve."""
from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import and_, desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import InvalidTransition, NotFound
from models import (
    Alert,
    AlertSeverity,
    AlertStatus,
    AttemptStatus,
    MonitoringSession,
    NotificationAttempt,
    NotificationPurpose,
    ResolutionReason,
    SessionState,
    get_session,
)

logger = logging.getLogger("carewatch.api.monitoring")

router = APIRouter(prefix="/api/monitoring", tags=["monitoring"])
actions_router = APIRouter(tags=["monitoring"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class SessionOut(BaseModel):
    id: int
    device_id: str
    patient_id: str
    state: SessionState
    version: int
    inactivity_started_at: datetime
    inactivity_threshold_seconds: int
    escalation_delay_seconds: int
    last_event_at: datetime
    checkin_sent_at: datetime | None
    escalation_started_at: datetime | None
    resolved_at: datetime | None
    resolution_reason: ResolutionReason | None
    delivery_failed: bool
    created_at: datetime | None

    model_config = {"from_attributes": True}


class AlertOut(BaseModel):
    id: int
    session_id: int
    patient_id: str
    device_id: str
    alert_type: str
    severity: AlertSeverity
    status: AlertStatus
    message: str
    notified_targets: list[str]
    delivery_failed: bool
    acknowledged_by: str | None
    acknowledged_at: datetime | None
    escalated_at: datetime | None
    created_at: datetime | None

    model_config = {"from_attributes": True}


class AttemptOut(BaseModel):
    id: int
    session_id: int
    alert_id: int | None
    purpose: NotificationPurpose
    channel: str
    target: str
    status: AttemptStatus
    attempt_count: int
    last_error: str | None
    provider_message_id: str | None
    created_at: datetime | None
    updated_at: datetime | None

    model_config = {"from_attributes": True}


class AcknowledgeIn(BaseModel):
    model_config = {"populate_by_name": True}

    acknowledged_by: str = Field("dashboard", alias="acknowledgedBy", min_length=1)


class ResolveIn(BaseModel):
    reason: str | None = None


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

@router.get("/sessions", response_model=list[SessionOut])
async def list_sessions(
    device_id: str | None = Query(None),
    patient_id: str | None = Query(None),
    state: SessionState | None = Query(None),
    unresolved: bool = Query(False),
    limit: int = Query(50, le=500),
    offset: int = Query(0),
    session: AsyncSession = Depends(get_session),
):
    stmt = select(MonitoringSession)
    conditions = []
    if device_id is not None:
        conditions.append(MonitoringSession.device_id == device_id)
    if patient_id is not None:
        conditions.append(MonitoringSession.patient_id == patient_id)
    if state is not None:
        conditions.append(MonitoringSession.state == state)
    if unresolved:
        conditions.append(MonitoringSession.resolved_at.is_(None))
    if conditions:
        stmt = stmt.where(and_(*conditions))

    stmt = stmt.order_by(desc(MonitoringSession.id)).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return result.scalars().all()


@router.get("/sessions/{session_id}", response_model=SessionOut)
async def get_monitoring_session(session_id: int, session: AsyncSession = Depends(get_session)):
    row = await session.get(MonitoringSession, session_id)
    if not row:
        raise HTTPException(404, "Session not found")
    return row


@router.get("/sessions/{session_id}/attempts", response_model=list[AttemptOut])
async def list_session_attempts(session_id: int, session: AsyncSession = Depends(get_session)):
    if not await session.get(MonitoringSession, session_id):
        raise HTTPException(404, "Session not found")
    stmt = (
        select(NotificationAttempt)
        .where(NotificationAttempt.session_id == session_id)
        .order_by(NotificationAttempt.id)
    )
    result = await session.execute(stmt)
    return result.scalars().all()


@router.get("/alerts", response_model=list[AlertOut])
async def list_alerts(
    status: AlertStatus | None = Query(None),
    patient_id: str | None = Query(None),
    delivery_failed: bool | None = Query(None),
    limit: int = Query(50, le=500),
    offset: int = Query(0),
    session: AsyncSession = Depends(get_session),
):
    stmt = select(Alert)
    conditions = []
    if status is not None:
        conditions.append(Alert.status == status)
    if patient_id is not None:
        conditions.append(Alert.patient_id == patient_id)
    if delivery_failed is not None:
        conditions.append(Alert.delivery_failed == delivery_failed)
    if conditions:
        stmt = stmt.where(and_(*conditions))

    stmt = stmt.order_by(desc(Alert.id)).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return result.scalars().all()


# ---------------------------------------------------------------------------
# Operator actions
# ---------------------------------------------------------------------------

def _processor(request: Request):
    module = getattr(request.app.state, "monitoring", None)
    if module is None:
        raise HTTPException(503, "Monitoring module not running")
    return module.processor


@actions_router.post("/alerts/{alert_id}/acknowledge")
async def acknowledge_alert(alert_id: int, request: Request, data: AcknowledgeIn | None = None):
    processor = _processor(request)
    by = data.acknowledged_by if data else "dashboard"
    try:
        transition = await processor.acknowledge_alert(alert_id, by)
    except NotFound as exc:
        raise HTTPException(404, str(exc))
    except InvalidTransition as exc:
        raise HTTPException(409, str(exc))
    logger.info("Alert %d acknowledged by %s", alert_id, by)
    return {"ok": True, "transition": transition.as_dict()}


@actions_router.post("/sessions/{session_id}/resolve")
async def resolve_session(session_id: int, request: Request, data: ResolveIn | None = None):
    processor = _processor(request)
    try:
        transition = await processor.resolve_manual(session_id)
    except NotFound as exc:
        raise HTTPException(404, str(exc))
    except InvalidTransition as exc:
        raise HTTPException(409, str(exc))
    logger.info(
        "Session %d resolved manually%s",
        session_id, f" ({data.reason})" if data and data.reason else "",
    )
    return {"ok": True, "transition": transition.as_dict()}
