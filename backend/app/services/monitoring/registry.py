"""Read-only adapter over the external device registry.

Device rows are cached in Redis for REGISTRY_CACHE_TTL seconds; contacts are
read straight from the database.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass

from redis.asyncio import Redis
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from core.errors import UnregisteredDeviceError
from models.device import CareContact, ContactRole, Device
from services.monitoring.config import REDIS_DEVICE_PREFIX

logger = logging.getLogger("carewatch.registry")


@dataclass(frozen=True)
class DeviceInfo:
    id: str
    patient_id: str
    name: str
    location: str
    inactivity_threshold_seconds: int
    escalation_delay_seconds: int
    is_active: bool


@dataclass(frozen=True)
class Contact:
    patient_id: str
    role: str
    display_name: str
    address: str


def normalize_address(address: str) -> str:
    """'+1 (303) 927-9468' and '13039279468@s.whatsapp.net' both -> '13039279468'."""
    local = (address or "").strip().split("@")[0]
    digits = re.sub(r"[^\d]", "", local)
    return digits or local.lower()


class DeviceRegistry:

    def __init__(
        self,
        redis: Redis,
        session_factory: async_sessionmaker[AsyncSession],
        cache_ttl: int | None = None,
    ):
        self.redis = redis
        self.session_factory = session_factory
        self.cache_ttl = cache_ttl if cache_ttl is not None else settings.REGISTRY_CACHE_TTL

    async def get_device(self, device_id: str) -> DeviceInfo:
        info = await self._from_cache(device_id)
        if info is None:
            async with self.session_factory() as session:
                device = await session.get(Device, device_id)
            if device is None:
                raise UnregisteredDeviceError(device_id)
            info = DeviceInfo(
                id=device.id,
                patient_id=device.patient_id,
                name=device.name,
                location=device.location,
                inactivity_threshold_seconds=device.inactivity_threshold_seconds,
                escalation_delay_seconds=device.escalation_delay_seconds,
                is_active=device.is_active,
            )
            await self._to_cache(info)

        if not info.is_active:
            raise UnregisteredDeviceError(device_id)
        return info

    async def get_contacts(
        self, patient_id: str, role: ContactRole | None = None
    ) -> list[Contact]:
        conditions = [
            CareContact.patient_id == patient_id,
            CareContact.is_active == True,  # noqa: E712
        ]
        if role is not None:
            conditions.append(CareContact.role == role)
        stmt = select(CareContact).where(and_(*conditions)).order_by(CareContact.id)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        return [self._contact(row) for row in rows]

    async def find_contacts(self, address: str) -> list[Contact]:
        """All active contacts registered under a messaging address."""
        normalized = normalize_address(address)
        candidates = {address.strip(), normalized, f"+{normalized}"}
        stmt = (
            select(CareContact)
            .where(
                and_(
                    CareContact.address.in_(candidates),
                    CareContact.is_active == True,  # noqa: E712
                )
            )
            .order_by(CareContact.id)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        return [self._contact(row) for row in rows]

    async def invalidate(self, device_id: str) -> None:
        await self.redis.delete(f"{REDIS_DEVICE_PREFIX}{device_id}")

    # ------------------------------------------------------------------

    async def _from_cache(self, device_id: str) -> DeviceInfo | None:
        try:
            raw = await self.redis.get(f"{REDIS_DEVICE_PREFIX}{device_id}")
        except Exception as exc:
            logger.warning("Registry cache read failed for %s: %s", device_id, exc)
            return None
        if not raw:
            return None
        try:
            return DeviceInfo(**json.loads(raw))
        except (json.JSONDecodeError, TypeError):
            return None

    async def _to_cache(self, info: DeviceInfo) -> None:
        try:
            await self.redis.set(
                f"{REDIS_DEVICE_PREFIX}{info.id}",
                json.dumps(asdict(info)),
                ex=self.cache_ttl,
            )
        except Exception as exc:
            logger.warning("Registry cache write failed for %s: %s", info.id, exc)

    @staticmethod
    def _contact(row: CareContact) -> Contact:
        return Contact(
            patient_id=row.patient_id,
            role=row.role.value,
            display_name=row.display_name,
            address=row.address,
        )
