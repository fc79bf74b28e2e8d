"""API routes for device registration and anti-theft commands."""

import logging
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from aegis.db import get_db
from aegis.db.models import CommandType, User, as_utc
from aegis.schemas.common import DeviceInfo, ok
from aegis.services.auth import get_current_user
from aegis.services.commands import dispatch_command, get_command, record_location
from aegis.services.devices import bind_push_token, upsert_device
from aegis.services.push import get_push_sender
from aegis.services.rate_limit import user_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/device", tags=["devices"])


# ── Models ────────────────────────────────────────────────────────────


class DeviceRegisterRequest(DeviceInfo):
    pushToken: Optional[str] = Field(None, min_length=1, max_length=512)


class CommandMetadata(BaseModel):
    lockMessage: Optional[str] = Field(None, max_length=256)
    phoneNumber: Optional[str] = Field(None, max_length=32)


class CommandRequest(BaseModel):
    deviceId: str = Field(..., min_length=1)
    commandType: Literal["locate", "ring", "lock", "wipe"]
    metadata: Optional[CommandMetadata] = None


class LocationRequest(BaseModel):
    deviceId: str = Field(..., min_length=1)
    commandId: str = Field(..., min_length=1)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: float = Field(..., gt=0)
    timestamp: datetime


# ── Routes ────────────────────────────────────────────────────────────


@router.post("/register", summary="Register or refresh a device")
async def register_device(
    body: DeviceRegisterRequest,
    user: User = Depends(user_rate_limit("device_register", 10, 60)),
    db: AsyncSession = Depends(get_db),
):
    device = await upsert_device(db, user.id, body, reactivate=True)
    if body.pushToken:
        await bind_push_token(db, user.id, device, body.pushToken)
    return ok({"deviceId": device.id})


@router.post("/command", summary="Issue an anti-theft command to a device")
async def issue_command(
    body: CommandRequest,
    user: User = Depends(
        user_rate_limit(
            "device_command", 10, 3600, "Too many commands. Please try again later."
        )
    ),
    db: AsyncSession = Depends(get_db),
    sender=Depends(get_push_sender),
):
    metadata = body.metadata.model_dump(exclude_none=True) if body.metadata else {}
    result = await dispatch_command(
        db, sender, user, body.deviceId, CommandType(body.commandType), metadata
    )
    return ok({
        "commandId": result.command.id,
        "status": result.command.status,
        "pushesSent": result.pushes_sent,
    })


@router.post("/location", summary="Report a location fix for a locate command")
async def report_location(
    body: LocationRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    command = await record_location(
        db,
        user,
        body.deviceId,
        body.commandId,
        {
            "latitude": body.latitude,
            "longitude": body.longitude,
            "accuracy": body.accuracy,
            "timestamp": body.timestamp.isoformat(),
        },
    )
    return ok({"commandId": command.id, "status": command.status})


@router.get("/commands/{command_id}", summary="Get the state of a command")
async def command_status(
    command_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    command = await get_command(db, user, command_id)
    return ok({
        "commandId": command.id,
        "deviceId": command.device_id,
        "commandType": command.command_type,
        "status": command.status,
        "issuedAt": as_utc(command.issued_at),
        "executedAt": as_utc(command.executed_at),
        "metadata": command.metadata_ or {},
    })
