"""Shared fixtures: SQLite (aiosqlite) database per test, fakeredis, and a
recording gateway standing in for the messaging API."""
import os

# Settings are read at import time by config.py / models.base.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["DEBUG"] = "false"
os.environ["WEBHOOK_SECRET"] = ""
os.environ["SWEEP_SECRET"] = ""
os.environ["GATEWAY_URL"] = ""
os.environ["SWEEP_LOOP_ENABLED"] = "false"
os.environ["PUSH_TIMERS_ENABLED"] = "false"

from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.errors import TransientDispatchError
from models import Base, CareContact, ContactRole, Device
from services.monitoring import MonitoringModule
from services.monitoring.gateway import DELIVERED, FAILED, GatewayResult

T0 = datetime(2025, 1, 15, 10, 0, 0)

DEVICE_ID = "AA:BB:CC:DD:EE:01"
PATIENT_ID = "patient-ruth"
PATIENT_ADDRESS = "+15550000001"
CAREGIVER_ADDRESS = "+15550000002"


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def iso(seconds: float) -> str:
    return at(seconds).isoformat() + "Z"


def motion(event_type: str, seconds: float, device_id: str = DEVICE_ID) -> dict:
    return {"deviceId": device_id, "eventType": event_type, "occurredAt": iso(seconds)}


class FakeGateway:
    """Records every send. `script[target]` is consumed one outcome per call:
    "ok", "transient" (raises TransientDispatchError), "reject" (4xx) or
    "crash" (an error the gateway does not classify)."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.calls: list[str] = []
        self.script: dict[str, list[str]] = {}
        self.closed = False

    async def send(self, target: str, message: str) -> GatewayResult:
        self.calls.append(target)
        outcomes = self.script.get(target)
        outcome = outcomes.pop(0) if outcomes else "ok"
        if outcome == "transient":
            raise TransientDispatchError("HTTP 503")
        if outcome == "reject":
            return GatewayResult(FAILED, error="HTTP 400: bad number")
        if outcome == "crash":
            raise RuntimeError("gateway bug")
        self.sent.append((target, message))
        return GatewayResult(DELIVERED, provider_message_id=f"msg-{len(self.sent)}")

    async def close(self) -> None:
        self.closed = True

    def to(self, target: str) -> list[str]:
        return [message for t, message in self.sent if t == target]


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest_asyncio.fixture
async def db_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'carewatch.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def redis():
    client = FakeRedis()
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest_asyncio.fixture
async def seeded(db_factory):
    async with db_factory() as session:
        session.add(Device(
            id=DEVICE_ID,
            patient_id=PATIENT_ID,
            name="Hall sensor",
            location="living room",
            inactivity_threshold_seconds=30,
            escalation_delay_seconds=600,
            is_active=True,
        ))
        session.add(CareContact(
            patient_id=PATIENT_ID, role=ContactRole.patient,
            display_name="Ruth", address=PATIENT_ADDRESS,
        ))
        session.add(CareContact(
            patient_id=PATIENT_ID, role=ContactRole.caregiver,
            display_name="Sam", address=CAREGIVER_ADDRESS,
        ))
        await session.commit()
    return db_factory


@pytest_asyncio.fixture
async def module(seeded, redis, gateway, sleeper):
    """Monitoring module with inline dispatch and sweep-only timers."""
    mod = MonitoringModule(
        redis,
        seeded,
        gateway=gateway,
        background=False,
        push_timers=False,
        sweep_concurrency=1,
        sleep=sleeper,
    )
    yield mod
    await mod.stop()
