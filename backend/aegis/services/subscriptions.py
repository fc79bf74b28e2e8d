"""Subscription provisioning and lookup."""

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from aegis.config import settings
from aegis.core.errors import OwnershipConflict
from aegis.db.models import (
    ACTIVE_SUBSCRIPTION_STATUSES,
    Device,
    Platform,
    Subscription,
    as_utc,
)

logger = logging.getLogger(__name__)

FREE_PERIOD_DAYS = 365


async def find_active(
    db: AsyncSession, user_id: str, order_by_updated: bool = False
) -> Optional[Subscription]:
    order = Subscription.updated_at if order_by_updated else Subscription.created_at
    stmt = (
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.status.in_(ACTIVE_SUBSCRIPTION_STATUSES),
        )
        .order_by(order.desc())
        .limit(1)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def ensure_trial(db: AsyncSession, user_id: str, platform: str) -> Subscription:
    """Return the user's active/trial subscription, starting a free trial if there is none."""
    subscription = await find_active(db, user_id)
    if subscription is not None:
        return subscription

    now = datetime.now(timezone.utc)
    trial_end = now + timedelta(days=settings.TRIAL_DAYS)
    subscription = Subscription(
        user_id=user_id,
        tier="free",
        status="trial",
        platform=platform,
        trial_ends_at=trial_end,
        current_period_start=now,
        current_period_end=trial_end,
    )
    db.add(subscription)
    await db.flush()
    return subscription


def subscription_brief(subscription: Subscription) -> dict[str, Any]:
    return {
        "tier": subscription.tier,
        "status": subscription.status,
        "trialEndsAt": as_utc(subscription.trial_ends_at),
    }


def _full_view(subscription: Subscription, **extra) -> dict[str, Any]:
    view = {
        "id": subscription.id,
        "tier": subscription.tier,
        "status": subscription.status,
        "platform": subscription.platform,
        "trialEndsAt": as_utc(subscription.trial_ends_at),
        "currentPeriodStart": as_utc(subscription.current_period_start),
        "currentPeriodEnd": as_utc(subscription.current_period_end),
        "cancelAtPeriodEnd": subscription.cancel_at_period_end,
        "isPremium": subscription.tier == "premium" and subscription.status == "active",
    }
    view.update(extra)
    return view


async def current_subscription(db: AsyncSession, user_id: str) -> dict[str, Any]:
    """Resolve the caller's subscription, expiring lapsed trials on the way."""
    now = datetime.now(timezone.utc)
    subscription = await find_active(db, user_id, order_by_updated=True)

    if subscription is None:
        subscription = Subscription(
            user_id=user_id,
            tier="free",
            status="active",
            platform=await _default_platform(db, user_id),
            current_period_start=now,
            current_period_end=now + timedelta(days=FREE_PERIOD_DAYS),
        )
        db.add(subscription)
        await db.flush()
        return _full_view(subscription, isTrialActive=False, trialDaysRemaining=None)

    trial_end = as_utc(subscription.trial_ends_at)
    if subscription.status == "trial":
        if trial_end is None or trial_end <= now:
            logger.info("Trial %s for user %s has lapsed", subscription.id, user_id)
            subscription.status = "expired"
            subscription.tier = "free"
            await db.flush()
            return _full_view(subscription, isTrialActive=False, trialDaysRemaining=None)

        remaining = math.ceil((trial_end - now).total_seconds() / 86400)
        return _full_view(subscription, isTrialActive=True, trialDaysRemaining=remaining)

    return _full_view(subscription, isTrialActive=False, trialDaysRemaining=None)


async def activate_premium(
    db: AsyncSession,
    user_id: str,
    platform: str,
    platform_sub_id: str,
    receipt_data: str,
    period_end: datetime,
) -> Subscription:
    """Upsert the premium subscription identified by the store's subscription id."""
    now = datetime.now(timezone.utc)
    existing = (
        await db.execute(
            select(Subscription).where(Subscription.platform_sub_id == platform_sub_id)
        )
    ).scalar_one_or_none()

    if existing is not None and existing.user_id != user_id:
        raise OwnershipConflict("Subscription belongs to a different user")

    if existing is None:
        existing = Subscription(
            user_id=user_id,
            platform=platform,
            platform_sub_id=platform_sub_id,
        )
        db.add(existing)

    existing.tier = "premium"
    existing.status = "active"
    existing.receipt_data = receipt_data
    existing.current_period_start = now
    existing.current_period_end = period_end
    await db.flush()
    return existing


async def _default_platform(db: AsyncSession, user_id: str) -> str:
    platform = (
        await db.execute(
            select(Device.platform)
            .where(Device.user_id == user_id)
            .order_by(Device.last_seen.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
    return platform or Platform.ANDROID.value


async def subscription_summary(db: AsyncSession, user_id: str) -> dict[str, Any]:
    """Read-only view of the active/trial subscription, or a free placeholder."""
    subscription = await find_active(db, user_id, order_by_updated=True)
    if subscription is None:
        return {"tier": "free", "status": "active", "isPremium": False}
    return {
        "id": subscription.id,
        "tier": subscription.tier,
        "status": subscription.status,
        "platform": subscription.platform,
        "isPremium": subscription.tier == "premium" and subscription.status == "active",
        "trialEndsAt": as_utc(subscription.trial_ends_at),
        "currentPeriodEnd": as_utc(subscription.current_period_end),
    }
