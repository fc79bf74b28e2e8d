"""API routes for in-app purchase verification."""

import logging
from datetime import datetime, timezone
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from aegis.db import get_db
from aegis.db.models import User, as_utc
from aegis.schemas.common import ok
from aegis.services.auth import get_current_user
from aegis.services.receipts import get_receipt_verifier
from aegis.services.subscriptions import activate_premium
from aegis.services.telemetry import record_event_best_effort

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payment", tags=["payment"])


class PaymentVerifyRequest(BaseModel):
    platform: Literal["ios", "android"]
    receiptData: str = Field(..., min_length=1)
    productId: str = Field(..., min_length=1, max_length=256)


@router.post("/verify", summary="Verify a store receipt and activate premium")
async def verify_payment(
    body: PaymentVerifyRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    verifier=Depends(get_receipt_verifier),
):
    result = await verifier.verify(body.platform, body.receiptData)
    if not result.valid or not result.subscription_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid receipt",
        )
    if not result.expiry_ms:
        logger.warning("Valid %s receipt without an expiry for user %s", body.platform, user.id)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Subscription expiry date not available",
        )

    period_end = datetime.fromtimestamp(result.expiry_ms / 1000, tz=timezone.utc)
    subscription = await activate_premium(
        db,
        user.id,
        body.platform,
        result.subscription_id,
        body.receiptData,
        period_end,
    )

    await record_event_best_effort(
        db,
        user.id,
        "subscription_activated",
        {"tier": "premium", "platform": body.platform, "productId": body.productId},
    )

    logger.info("Activated premium subscription %s for user %s", subscription.id, user.id)
    return ok({
        "subscription": {
            "id": subscription.id,
            "tier": subscription.tier,
            "status": subscription.status,
            "currentPeriodEnd": as_utc(subscription.current_period_end),
        }
    })
