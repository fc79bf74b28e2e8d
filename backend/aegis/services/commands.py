"""Anti-theft command dispatch.

Lifecycle of a command row::

    pending ──push fan-out──▶ sent ──location fix (locate only)──▶ executed
        └─────no delivery────▶ failed

A command is ``sent`` as soon as any one token accepted the push. Tokens the
provider reports as dead are deactivated whatever the overall outcome.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from aegis.core.errors import InvalidState, NotFound, ServiceError
from aegis.db.models import (
    AntiTheftCommand,
    CommandStatus,
    CommandType,
    Device,
    PushToken,
    User,
)
from aegis.services.push import PushMessage
from aegis.services.telemetry import record_event

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    command: AntiTheftCommand
    pushes_sent: int


def _build_message(
    token: PushToken, command: AntiTheftCommand, command_type: CommandType
) -> PushMessage:
    return PushMessage(
        token=token.token,
        platform=token.platform,
        data={
            "type": "anti_theft_command",
            "commandId": command.id,
            "commandType": command_type.value,
            "metadata": json.dumps(command.metadata_ or {}),
        },
        sound="default" if command_type == CommandType.RING else None,
    )


async def dispatch_command(
    db: AsyncSession,
    sender,
    user: User,
    device_id: str,
    command_type: CommandType,
    metadata: Optional[dict[str, Any]] = None,
) -> DispatchResult:
    """Persist a command for one of the caller's devices and push it to every active token."""
    device = (
        await db.execute(
            select(Device).where(
                Device.id == device_id,
                Device.user_id == user.id,
                Device.is_active.is_(True),
            )
        )
    ).scalar_one_or_none()
    if device is None:
        raise NotFound("Device not found or inactive")

    tokens = (
        await db.execute(
            select(PushToken).where(
                PushToken.device_id == device.id,
                PushToken.is_active.is_(True),
            )
        )
    ).scalars().all()
    if not tokens:
        raise ServiceError("Device has no active push tokens")

    command = AntiTheftCommand(
        device_id=device.id,
        command_type=command_type.value,
        status=CommandStatus.PENDING.value,
        issued_by=user.id,
        metadata_=metadata or {},
    )
    db.add(command)
    await db.flush()

    outcomes = await asyncio.gather(
        *(sender.send(_build_message(t, command, command_type)) for t in tokens),
        return_exceptions=True,
    )

    pushes_sent = 0
    for token, outcome in zip(tokens, outcomes):
        if isinstance(outcome, BaseException):
            logger.warning("Push to token %s raised: %s", token.id, outcome)
            continue
        if outcome.delivered:
            pushes_sent += 1
        elif outcome.invalid_token:
            logger.info("Deactivating dead push token %s", token.id)
            token.is_active = False

    command.status = (
        CommandStatus.SENT.value if pushes_sent > 0 else CommandStatus.FAILED.value
    )

    record_event(
        db,
        user.id,
        "anti_theft_command_issued",
        {
            "commandType": command_type.value,
            "deviceId": device.id,
            "success": pushes_sent > 0,
        },
        device_id=device.id,
    )
    await db.flush()

    logger.info(
        "Command %s (%s) for device %s: %d/%d pushes delivered",
        command.id, command_type.value, device.id, pushes_sent, len(tokens),
    )
    return DispatchResult(command=command, pushes_sent=pushes_sent)


async def record_location(
    db: AsyncSession,
    user: User,
    device_id: str,
    command_id: str,
    location: dict[str, Any],
) -> AntiTheftCommand:
    """Complete a sent LOCATE command with the device's position fix."""
    device = (
        await db.execute(
            select(Device).where(Device.id == device_id, Device.user_id == user.id)
        )
    ).scalar_one_or_none()
    if device is None:
        raise NotFound("Device not found")

    command = (
        await db.execute(
            select(AntiTheftCommand).where(
                AntiTheftCommand.id == command_id,
                AntiTheftCommand.device_id == device.id,
                AntiTheftCommand.command_type == CommandType.LOCATE.value,
            )
        )
    ).scalar_one_or_none()
    if command is None:
        raise NotFound("Command not found")
    if command.status != CommandStatus.SENT.value:
        raise InvalidState(f"Command is {command.status}, expected sent")

    # new dict so the JSON column is flagged dirty
    command.metadata_ = {**(command.metadata_ or {}), "location": location}
    command.status = CommandStatus.EXECUTED.value
    command.executed_at = datetime.now(timezone.utc)
    await db.flush()
    return command


async def get_command(db: AsyncSession, user: User, command_id: str) -> AntiTheftCommand:
    command = (
        await db.execute(
            select(AntiTheftCommand)
            .join(Device, Device.id == AntiTheftCommand.device_id)
            .where(AntiTheftCommand.id == command_id, Device.user_id == user.id)
        )
    ).scalar_one_or_none()
    if command is None:
        raise NotFound("Command not found")
    return command
