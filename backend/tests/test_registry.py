"""
DeviceRegistry: cache, contacts, address matching
"""

import pytest

from conftest import DEVICE_ID, PATIENT_ADDRESS, PATIENT_ID
from core.errors import UnregisteredDeviceError
from models import ContactRole, Device
from services.monitoring.registry import DeviceRegistry, normalize_address


class BrokenRedis:
    async def get(self, *args, **kwargs):
        raise ConnectionError("redis down")

    async def set(self, *args, **kwargs):
        raise ConnectionError("redis down")


@pytest.mark.parametrize("raw, expected", [
    ("+1 (555) 000-0001", "15550000001"),
    ("15550000001@s.whatsapp.net", "15550000001"),
    ("+15550000001", "15550000001"),
    ("  15550000001 ", "15550000001"),
    ("Caregiver@Example.org", "caregiver"),
])
def test_normalize_address(raw, expected):
    assert normalize_address(raw) == expected


class TestDevices:

    @pytest.mark.asyncio
    async def test_device_is_read_and_cached(self, seeded, redis):
        registry = DeviceRegistry(redis, seeded, cache_ttl=60)

        device = await registry.get_device(DEVICE_ID)

        assert device.patient_id == PATIENT_ID
        assert device.inactivity_threshold_seconds == 30
        assert 0 < await redis.ttl(f"registry:device:{DEVICE_ID}") <= 60

    @pytest.mark.asyncio
    async def test_cached_copy_served_until_invalidated(self, seeded, redis):
        registry = DeviceRegistry(redis, seeded)
        await registry.get_device(DEVICE_ID)

        async with seeded() as db:
            row = await db.get(Device, DEVICE_ID)
            row.inactivity_threshold_seconds = 120
            await db.commit()

        assert (await registry.get_device(DEVICE_ID)).inactivity_threshold_seconds == 30
        await registry.invalidate(DEVICE_ID)
        assert (await registry.get_device(DEVICE_ID)).inactivity_threshold_seconds == 120

    @pytest.mark.asyncio
    async def test_unknown_device(self, seeded, redis):
        registry = DeviceRegistry(redis, seeded)
        with pytest.raises(UnregisteredDeviceError):
            await registry.get_device("nope")

    @pytest.mark.asyncio
    async def test_cache_outage_falls_back_to_database(self, seeded):
        registry = DeviceRegistry(BrokenRedis(), seeded)
        device = await registry.get_device(DEVICE_ID)
        assert device.id == DEVICE_ID


class TestContacts:

    @pytest.mark.asyncio
    async def test_contacts_by_role(self, seeded, redis):
        registry = DeviceRegistry(redis, seeded)

        everyone = await registry.get_contacts(PATIENT_ID)
        caregivers = await registry.get_contacts(PATIENT_ID, ContactRole.caregiver)

        assert [c.role for c in everyone] == ["patient", "caregiver"]
        assert [c.display_name for c in caregivers] == ["Sam"]

    @pytest.mark.asyncio
    async def test_find_contacts_by_formatted_address(self, seeded, redis):
        registry = DeviceRegistry(redis, seeded)

        [contact] = await registry.find_contacts("15550000001@s.whatsapp.net")

        assert contact.address == PATIENT_ADDRESS
        assert contact.role == "patient"
        assert await registry.find_contacts("+19999999999") == []
