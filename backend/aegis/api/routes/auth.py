"""API routes for sign-in: provider ID tokens and email/password."""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from aegis.db import get_db
from aegis.db.models import Device, Subscription, User
from aegis.schemas.common import DeviceInfo, ok
from aegis.services.auth import create_access_token, hash_password, verify_password
from aegis.services.devices import upsert_device
from aegis.services.identity import IdentityError, verify_provider_token
from aegis.services.rate_limit import ip_rate_limit
from aegis.services.subscriptions import ensure_trial, subscription_brief
from aegis.services.telemetry import record_event_best_effort

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


# ── Models ────────────────────────────────────────────────────────────


class VerifyRequest(BaseModel):
    idToken: str = Field(..., min_length=1)
    provider: Literal["google", "apple", "email"]
    deviceInfo: DeviceInfo


class EmailRegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    name: str = Field(..., min_length=2, max_length=256)
    deviceInfo: DeviceInfo


class EmailLoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=128)
    deviceInfo: DeviceInfo


def _session_payload(user: User, device: Device, subscription: Subscription) -> dict:
    return {
        "token": create_access_token(user.id, user.email),
        "user": {"id": user.id, "email": user.email, "name": user.name},
        "device": {"id": device.id},
        "subscription": subscription_brief(subscription),
    }


async def find_user(db: AsyncSession, email: str) -> Optional[User]:
    return (
        await db.execute(select(User).where(User.email == email))
    ).scalar_one_or_none()


async def _insert_user(db: AsyncSession, user: User) -> bool:
    """Insert in a savepoint; False when the email was taken concurrently."""
    try:
        async with db.begin_nested():
            db.add(user)
            await db.flush()
    except IntegrityError:
        logger.warning("Concurrent registration for %s", user.email)
        return False
    return True


# ── Routes ────────────────────────────────────────────────────────────


@router.post("/verify", summary="Sign in with a Google or Apple ID token")
async def verify(body: VerifyRequest, db: AsyncSession = Depends(get_db)):
    if body.provider == "email":
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Use email-login for email accounts",
        )

    try:
        identity = await verify_provider_token(body.idToken, body.provider)
    except IdentityError as e:
        logger.warning("%s identity verification failed: %s", body.provider, e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication failed",
        )
    if not identity.email or not identity.provider_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication failed",
        )

    email = identity.email.lower()
    user = await find_user(db, email)
    if user is None:
        user = User(
            email=email,
            name=identity.name,
            auth_provider=body.provider,
            auth_provider_id=identity.provider_id,
        )
        if not await _insert_user(db, user):
            # a parallel first sign-in created the account
            user = await find_user(db, email)
    if user is None or user.auth_provider_id != identity.provider_id:
        logger.warning("Provider id mismatch for %s", email)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication failed",
        )

    device = await upsert_device(db, user.id, body.deviceInfo)
    subscription = await ensure_trial(db, user.id, body.deviceInfo.platform)

    logger.info("User %s signed in with %s", user.id, body.provider)
    return ok(_session_payload(user, device, subscription))


@router.post(
    "/email-register",
    status_code=status.HTTP_201_CREATED,
    summary="Create an email/password account",
)
async def email_register(body: EmailRegisterRequest, db: AsyncSession = Depends(get_db)):
    email = body.email.lower()
    user = None
    if await find_user(db, email) is None:
        user = User(
            email=email,
            name=body.name,
            auth_provider="email",
            password_hash=hash_password(body.password),
        )
        if not await _insert_user(db, user):
            user = None
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Email already registered",
        )

    device = await upsert_device(db, user.id, body.deviceInfo)
    subscription = await ensure_trial(db, user.id, body.deviceInfo.platform)

    await record_event_best_effort(
        db,
        user.id,
        "email_register",
        {"deviceId": device.id, "platform": body.deviceInfo.platform},
        device_id=device.id,
    )

    logger.info("Registered email user %s", user.id)
    return ok(_session_payload(user, device, subscription))


@router.post(
    "/email-login",
    summary="Sign in with email and password",
    dependencies=[
        Depends(ip_rate_limit("email_login", 5, 15 * 60, "Too many login attempts"))
    ],
)
async def email_login(body: EmailLoginRequest, db: AsyncSession = Depends(get_db)):
    user = await find_user(db, body.email.lower())

    if not user or not user.password_hash or not verify_password(
        body.password, user.password_hash
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    device = await upsert_device(db, user.id, body.deviceInfo, reactivate=True)
    subscription = await ensure_trial(db, user.id, body.deviceInfo.platform)

    await record_event_best_effort(
        db,
        user.id,
        "email_login",
        {"deviceId": device.id, "platform": body.deviceInfo.platform},
        device_id=device.id,
    )

    return ok(_session_payload(user, device, subscription))
