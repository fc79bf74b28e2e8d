"""API route for batched client telemetry."""

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from aegis.db import get_db
from aegis.db.models import User
from aegis.schemas.common import ok
from aegis.services.devices import get_owned_device
from aegis.services.rate_limit import user_rate_limit
from aegis.services.telemetry import record_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/telemetry", tags=["telemetry"])


class TelemetryEvent(BaseModel):
    eventType: str = Field(..., min_length=1, max_length=128)
    eventData: dict[str, Any]
    timestamp: datetime


class TelemetryBatch(BaseModel):
    deviceId: str = Field(..., min_length=1)
    events: list[TelemetryEvent] = Field(..., min_length=1, max_length=500)


@router.post("/batch", summary="Ingest a batch of telemetry events")
async def ingest_batch(
    body: TelemetryBatch,
    user: User = Depends(user_rate_limit("telemetry", 100, 3600)),
    db: AsyncSession = Depends(get_db),
):
    device = await get_owned_device(db, user.id, body.deviceId)

    for event in body.events:
        record_event(
            db,
            user.id,
            event.eventType,
            event.eventData,
            device_id=device.id,
            timestamp=event.timestamp,
        )
    await db.flush()

    logger.debug("Stored %d telemetry events for device %s", len(body.events), device.id)
    return ok({"eventsProcessed": len(body.events)})
