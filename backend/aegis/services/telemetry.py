"""Telemetry rows written by the routes and the batch ingestion endpoint."""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from aegis.db.models import TelemetryLog

logger = logging.getLogger(__name__)


def record_event(
    db: AsyncSession,
    user_id: str,
    event_type: str,
    event_data: dict[str, Any],
    device_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> TelemetryLog:
    """Stage a telemetry row in the caller's unit of work."""
    row = TelemetryLog(
        user_id=user_id,
        device_id=device_id,
        event_type=event_type,
        event_data=event_data,
    )
    if timestamp is not None:
        row.timestamp = timestamp
    db.add(row)
    return row


async def record_event_best_effort(
    db: AsyncSession,
    user_id: str,
    event_type: str,
    event_data: dict[str, Any],
    device_id: Optional[str] = None,
) -> None:
    """Write a telemetry row in a savepoint; a failure is logged, not raised."""
    try:
        async with db.begin_nested():
            record_event(db, user_id, event_type, event_data, device_id=device_id)
    except SQLAlchemyError as e:
        logger.warning("Telemetry write failed for %s: %s", event_type, e)
