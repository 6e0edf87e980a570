"""
WebSocket live feed + Redis PubSub bridge.

WS /ws/monitoring — snapshot of unresolved sessions, then every transition
transitions_to_ws_bridge — background task: Redis PubSub → ConnectionManager.broadcast
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from redis.asyncio import Redis
from sqlalchemy import select

from models.base import async_session
from models.monitoring_session import MonitoringSession
from services.monitoring.config import REDIS_CHANNEL_TRANSITIONS

logger = logging.getLogger("carewatch.websocket")

router = APIRouter()


# ---------------------------------------------------------------------------
# Connection Manager
# ---------------------------------------------------------------------------

class ConnectionManager:
    """Manages active WebSocket connections and broadcasts messages."""

    def __init__(self) -> None:
        self.connections: list[WebSocket] = []

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self.connections.append(ws)
        logger.info("WS client connected (%d total)", len(self.connections))

    def disconnect(self, ws: WebSocket) -> None:
        if ws in self.connections:
            self.connections.remove(ws)
        logger.info("WS client disconnected (%d remaining)", len(self.connections))

    async def broadcast(self, message: str) -> None:
        dead: list[WebSocket] = []
        for ws in self.connections:
            try:
                await ws.send_text(message)
            except Exception:
                dead.append(ws)
        for ws in dead:
            if ws in self.connections:
                self.connections.remove(ws)
        if dead:
            logger.debug("Removed %d dead WS connections", len(dead))


manager = ConnectionManager()


async def open_sessions_snapshot() -> list[dict]:
    async with async_session() as session:
        result = await session.execute(
            select(MonitoringSession)
            .where(MonitoringSession.resolved_at.is_(None))
            .order_by(MonitoringSession.id)
        )
        rows = result.scalars().all()
    return [
        {
            "session_id": s.id,
            "device_id": s.device_id,
            "patient_id": s.patient_id,
            "state": s.state.value,
            "version": s.version,
            "inactivity_started_at": s.inactivity_started_at.isoformat(),
            "next_due_at": due.isoformat() if (due := s.next_due_at()) else None,
        }
        for s in rows
    ]


# ---------------------------------------------------------------------------
# WebSocket Endpoint
# ---------------------------------------------------------------------------

@router.websocket("/ws/monitoring")
async def ws_monitoring(websocket: WebSocket) -> None:
    await manager.connect(websocket)
    try:
        snapshot = await open_sessions_snapshot()
        await websocket.send_json({"type": "snapshot", "data": snapshot})

        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception as exc:
        logger.debug("WS error: %s", exc)
        manager.disconnect(websocket)


# ---------------------------------------------------------------------------
# Redis → WebSocket Bridge (background task)
# ---------------------------------------------------------------------------

async def transitions_to_ws_bridge(redis: Redis) -> None:
    """Subscribe to the transitions channel and broadcast to all WS clients."""
    logger.info("Redis→WS bridge started, subscribing to %s", REDIS_CHANNEL_TRANSITIONS)
    pubsub = redis.pubsub()
    await pubsub.subscribe(REDIS_CHANNEL_TRANSITIONS)

    try:
        async for message in pubsub.listen():
            if message["type"] == "message":
                payload = message["data"]
                if isinstance(payload, bytes):
                    payload = payload.decode("utf-8")
                await manager.broadcast(payload)
    except Exception as exc:
        logger.error("Redis→WS bridge error: %s", exc)
    finally:
        await pubsub.unsubscribe(REDIS_CHANNEL_TRANSITIONS)
        await pubsub.close()
