"""Device and push-token binding.

A device row (keyed by the app's hardware id) and a push token belong to
exactly one user; a second user trying to claim either is rejected. Two
first registrations racing for one id are settled by the unique constraint
and raise the same conflict.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from aegis.core.errors import NotFound, OwnershipConflict
from aegis.db.models import Device, Platform, PushToken
from aegis.schemas.common import DeviceInfo

logger = logging.getLogger(__name__)


def push_platform(platform: str) -> str:
    return "apns" if platform == Platform.IOS.value else "fcm"


async def find_device(db: AsyncSession, hardware_id: str) -> Optional[Device]:
    return (
        await db.execute(select(Device).where(Device.device_id == hardware_id))
    ).scalar_one_or_none()


async def find_push_token(db: AsyncSession, token: str) -> Optional[PushToken]:
    return (
        await db.execute(select(PushToken).where(PushToken.token == token))
    ).scalar_one_or_none()


async def _insert(db: AsyncSession, row, conflict: str):
    try:
        async with db.begin_nested():
            db.add(row)
            await db.flush()
    except IntegrityError:
        logger.warning("Concurrent insert lost: %s", conflict)
        raise OwnershipConflict(conflict)
    return row


async def upsert_device(
    db: AsyncSession,
    user_id: str,
    info: DeviceInfo,
    reactivate: bool = False,
) -> Device:
    """Create or refresh the caller's device row for ``info.deviceId``."""
    device = await find_device(db, info.deviceId)

    if device is not None and device.user_id != user_id:
        logger.warning("User %s tried to claim device %s of another user", user_id, device.id)
        raise OwnershipConflict("Device belongs to another user")

    now = datetime.now(timezone.utc)
    if device is None:
        device = Device(
            user_id=user_id,
            device_id=info.deviceId,
            device_name=info.deviceName,
            platform=info.platform,
            os_version=info.osVersion,
            app_version=info.appVersion,
            last_seen=now,
            is_active=True,
        )
        return await _insert(db, device, "Device belongs to another user")

    device.os_version = info.osVersion
    device.app_version = info.appVersion
    device.last_seen = now
    if reactivate:
        device.device_name = info.deviceName
        device.is_active = True
    await db.flush()
    return device


async def bind_push_token(
    db: AsyncSession, user_id: str, device: Device, token: str
) -> PushToken:
    existing = await find_push_token(db, token)

    if existing is not None:
        owner = (
            await db.execute(select(Device.user_id).where(Device.id == existing.device_id))
        ).scalar_one_or_none()
        if owner is not None and owner != user_id:
            raise OwnershipConflict("Push token belongs to another user")
        existing.device_id = device.id
        existing.platform = push_platform(device.platform)
        existing.is_active = True
        await db.flush()
        return existing

    push_token = PushToken(
        device_id=device.id,
        token=token,
        platform=push_platform(device.platform),
        is_active=True,
    )
    return await _insert(db, push_token, "Push token belongs to another user")


async def get_owned_device(db: AsyncSession, user_id: str, device_id: str) -> Device:
    """Look up a device by row id, scoped to its owner."""
    device = (
        await db.execute(
            select(Device).where(Device.id == device_id, Device.user_id == user_id)
        )
    ).scalar_one_or_none()
    if device is None:
        raise NotFound("Device not found")
    return device
