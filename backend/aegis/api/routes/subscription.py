"""API routes for the caller's subscription state."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from aegis.db import get_db
from aegis.db.models import Device, User
from aegis.schemas.common import ok
from aegis.services.auth import get_current_user
from aegis.services.subscriptions import current_subscription, subscription_summary

router = APIRouter(prefix="/api/subscription", tags=["subscription"])


class SubscriptionQuery(BaseModel):
    deviceId: Optional[str] = None


@router.get("/current", summary="Current subscription, expiring lapsed trials")
async def get_current(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return ok({"subscription": await current_subscription(db, user.id)})


@router.post("/current", summary="Current subscription summary for a device")
async def post_current(
    body: SubscriptionQuery,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if body.deviceId:
        device = (
            await db.execute(
                select(Device.id).where(
                    Device.device_id == body.deviceId, Device.user_id == user.id
                )
            )
        ).scalar_one_or_none()
        if device is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Device not found",
            )

    return ok({"subscription": await subscription_summary(db, user.id)})
