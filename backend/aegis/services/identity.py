"""Sign-in provider identity verification (Google, Apple).

Google ID tokens are checked with google-auth against the configured
OAuth client id. Apple ID tokens are RS256 JWTs verified against Apple's
published JWKS, which is fetched with httpx and kept for an hour.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

import httpx
from google.auth.exceptions import GoogleAuthError
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token
from jose import JWTError, jwt
from jose.exceptions import JOSEError

from aegis.config import settings

logger = logging.getLogger(__name__)

APPLE_ISSUER = "https://appleid.apple.com"
APPLE_JWKS_URL = "https://appleid.apple.com/auth/keys"
JWKS_TTL_SECONDS = 3600


class IdentityError(Exception):
    """The provider token could not be verified."""


@dataclass
class VerifiedIdentity:
    email: Optional[str]
    provider_id: str
    name: Optional[str] = None


# ── Google ────────────────────────────────────────────────────────────


def _verify_google_sync(token: str) -> dict:
    return google_id_token.verify_oauth2_token(
        token,
        google_requests.Request(),
        audience=settings.GOOGLE_OAUTH_CLIENT_ID or None,
    )


async def verify_google_token(token: str) -> VerifiedIdentity:
    try:
        claims = await asyncio.to_thread(_verify_google_sync, token)
    except (ValueError, GoogleAuthError) as e:
        raise IdentityError(f"Google token verification failed: {e}") from e

    if not claims.get("email"):
        raise IdentityError("Google token carries no email")
    if not claims.get("sub"):
        raise IdentityError("Google token carries no subject")

    return VerifiedIdentity(
        email=claims["email"],
        provider_id=claims["sub"],
        name=claims.get("name"),
    )


# ── Apple ─────────────────────────────────────────────────────────────


class _AppleKeyCache:
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport
        self._keys: list[dict] = []
        self._fetched_at = 0.0
        self._lock = asyncio.Lock()

    async def get(self, kid: str) -> Optional[dict]:
        async with self._lock:
            stale = time.monotonic() - self._fetched_at > JWKS_TTL_SECONDS
            if stale or not any(k.get("kid") == kid for k in self._keys):
                await self._refresh()
        return next((k for k in self._keys if k.get("kid") == kid), None)

    async def _refresh(self) -> None:
        async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
            resp = await client.get(APPLE_JWKS_URL)
            resp.raise_for_status()
            body = resp.json()
        keys = body.get("keys") if isinstance(body, dict) else None
        if not isinstance(keys, list):
            raise ValueError("JWKS response carries no key list")
        self._keys = [k for k in keys if isinstance(k, dict)]
        self._fetched_at = time.monotonic()


_apple_keys = _AppleKeyCache()


async def verify_apple_token(token: str) -> VerifiedIdentity:
    try:
        header = jwt.get_unverified_header(token)
    except JWTError as e:
        raise IdentityError("Malformed Apple ID token") from e

    try:
        key = await _apple_keys.get(header.get("kid", ""))
    except (httpx.HTTPError, ValueError) as e:
        raise IdentityError(f"Could not fetch Apple signing keys: {e}") from e
    if key is None:
        raise IdentityError("Unknown Apple signing key")

    options = {"verify_aud": bool(settings.APPLE_CLIENT_ID)}
    try:
        claims = jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            audience=settings.APPLE_CLIENT_ID or None,
            issuer=APPLE_ISSUER,
            options=options,
        )
    except JOSEError as e:
        raise IdentityError("Invalid Apple ID token") from e
    if not claims.get("sub"):
        raise IdentityError("Apple token carries no subject")

    return VerifiedIdentity(
        email=claims.get("email"),
        provider_id=claims["sub"],
        name=claims.get("name"),
    )


async def verify_provider_token(token: str, provider: str) -> VerifiedIdentity:
    if provider == "google":
        return await verify_google_token(token)
    if provider == "apple":
        return await verify_apple_token(token)
    raise IdentityError(f"Unsupported provider: {provider}")
