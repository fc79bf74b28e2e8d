"""Sliding-window rate limiting on top of the shared cache."""

import logging
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from redis.exceptions import RedisError

from aegis.db.models import User
from aegis.services.auth import get_current_user
from aegis.services.cache import CacheBackend, get_cache

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    success: bool
    remaining: int


async def rate_limit(
    cache: CacheBackend,
    identifier: str,
    limit: int = 100,
    window: int = 60,
) -> RateLimitResult:
    """Count one request for ``identifier`` against ``limit`` per ``window`` seconds.

    When the cache is unreachable the request is let through.
    """
    key = f"rate_limit:{identifier}"
    try:
        allowed, remaining = await cache.hit_window(key, limit, window)
    except (RedisError, OSError) as e:
        logger.warning("Rate limiter unavailable for %s, allowing request: %s", identifier, e)
        return RateLimitResult(success=True, remaining=limit)
    return RateLimitResult(success=allowed, remaining=remaining)


def client_ip(request: Request) -> str:
    """Best-effort caller address, preferring common proxy headers."""
    forwarded = (
        request.headers.get("x-forwarded-for")
        or request.headers.get("x-real-ip")
        or request.headers.get("x-client-ip")
    )
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "anonymous"


def user_rate_limit(
    scope: str,
    limit: int,
    window: int,
    message: str = "Too many requests",
):
    """Dependency factory: rate limit the authenticated caller for ``scope``."""

    async def _check(
        user: User = Depends(get_current_user),
        cache: CacheBackend = Depends(get_cache),
    ) -> User:
        result = await rate_limit(cache, f"{scope}:{user.id}", limit, window)
        if not result.success:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=message,
            )
        return user

    return _check


def ip_rate_limit(
    scope: str,
    limit: int,
    window: int,
    message: str = "Too many requests",
):
    """Dependency factory: rate limit unauthenticated routes by client IP."""

    async def _check(
        request: Request,
        cache: CacheBackend = Depends(get_cache),
    ) -> None:
        result = await rate_limit(cache, f"{scope}:{client_ip(request)}", limit, window)
        if not result.success:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=message,
            )

    return _check
