"""Key-value cache used for hash verdicts and rate-limit windows.

Two backends share one interface:

- ``RedisCache`` (redis.asyncio) for deployments with several workers,
  where verdicts and rate-limit windows must be shared.
- ``MemoryCache`` for local development and tests, selected when
  ``AEGIS_REDIS_URL`` is empty.

Redis expires keys itself; ``MemoryCache`` sweeps expired entries periodically.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

import redis.asyncio as redis

from aegis.config import settings

logger = logging.getLogger(__name__)


class CacheBackend(ABC):
    name: str = "base"

    @abstractmethod
    async def get_many(self, keys: list[str]) -> list[Optional[str]]:
        ...

    @abstractmethod
    async def set_many(self, items: dict[str, str], ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def delete(self, *keys: str) -> None:
        ...

    @abstractmethod
    async def hit_window(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int]:
        """Record one hit in a sliding window.

        Returns ``(allowed, remaining)``. A rejected hit is not recorded.
        """

    async def close(self) -> None:
        pass


# ── Redis ─────────────────────────────────────────────────────────────

_SLIDING_WINDOW_LUA = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local window_start = now - (window * 1000)

redis.call('ZREMRANGEBYSCORE', key, 0, window_start)
local count = redis.call('ZCARD', key)

if count >= limit then
  return {0, 0}
end

local seq = redis.call('INCR', key .. ':seq')
redis.call('ZADD', key, now, now .. ':' .. seq)
redis.call('EXPIRE', key, window)
redis.call('EXPIRE', key .. ':seq', window)

return {1, limit - count - 1}
"""


class RedisCache(CacheBackend):
    name = "redis"

    def __init__(self, url: str):
        self._client = redis.from_url(url, decode_responses=True)
        self._window_script = self._client.register_script(_SLIDING_WINDOW_LUA)

    async def get_many(self, keys: list[str]) -> list[Optional[str]]:
        if not keys:
            return []
        return await self._client.mget(keys)

    async def set_many(self, items: dict[str, str], ttl_seconds: int) -> None:
        if not items:
            return
        async with self._client.pipeline(transaction=False) as pipe:
            for key, value in items.items():
                pipe.setex(key, ttl_seconds, value)
            await pipe.execute()

    async def delete(self, *keys: str) -> None:
        if keys:
            await self._client.delete(*keys)

    async def hit_window(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int]:
        now_ms = int(time.time() * 1000)
        allowed, remaining = await self._window_script(
            keys=[key], args=[now_ms, window_seconds, limit]
        )
        return bool(allowed), int(remaining)

    async def close(self) -> None:
        await self._client.aclose()


# ── In-process ────────────────────────────────────────────────────────


class MemoryCache(CacheBackend):
    """Single-process cache with TTL support.

    Expired values and idle rate-limit windows are swept at most once per
    ``sweep_interval`` seconds, on whichever call comes first.
    """

    name = "memory"

    def __init__(self, clock=time.monotonic, sweep_interval: float = 60.0):
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval
        self._values: dict[str, tuple[str, float]] = {}
        # key -> (window_seconds, hit timestamps)
        self._hits: dict[str, tuple[int, list[float]]] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._values) + len(self._hits)

    def _maybe_sweep(self, now: float) -> None:
        if now < self._next_sweep:
            return
        self._next_sweep = now + self._sweep_interval
        for key in [k for k, (_, exp) in self._values.items() if exp <= now]:
            del self._values[key]
        idle = [
            k for k, (win, hits) in self._hits.items() if not hits or hits[-1] <= now - win
        ]
        for key in idle:
            del self._hits[key]

    async def get_many(self, keys: list[str]) -> list[Optional[str]]:
        now = self._clock()
        async with self._lock:
            self._maybe_sweep(now)
            out: list[Optional[str]] = []
            for key in keys:
                entry = self._values.get(key)
                if entry is None:
                    out.append(None)
                elif entry[1] <= now:
                    del self._values[key]
                    out.append(None)
                else:
                    out.append(entry[0])
            return out

    async def set_many(self, items: dict[str, str], ttl_seconds: int) -> None:
        now = self._clock()
        expires = now + ttl_seconds
        async with self._lock:
            self._maybe_sweep(now)
            for key, value in items.items():
                self._values[key] = (value, expires)

    async def delete(self, *keys: str) -> None:
        async with self._lock:
            for key in keys:
                self._values.pop(key, None)

    async def hit_window(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int]:
        now = self._clock()
        window_start = now - window_seconds
        async with self._lock:
            self._maybe_sweep(now)
            _, previous = self._hits.get(key, (window_seconds, []))
            hits = [ts for ts in previous if ts > window_start]
            if len(hits) >= limit:
                self._hits[key] = (window_seconds, hits)
                return False, 0
            hits.append(now)
            self._hits[key] = (window_seconds, hits)
            return True, limit - len(hits)

    def clear(self) -> None:
        self._values.clear()
        self._hits.clear()


# ── Process-wide instance ─────────────────────────────────────────────

_cache: Optional[CacheBackend] = None


def build_cache() -> CacheBackend:
    if settings.REDIS_URL:
        logger.info("Using Redis cache")
        return RedisCache(settings.REDIS_URL)
    logger.info("AEGIS_REDIS_URL not set; using in-process cache")
    return MemoryCache()


def set_cache(backend: Optional[CacheBackend]) -> None:
    global _cache
    _cache = backend


def get_cache() -> CacheBackend:
    """FastAPI dependency returning the configured cache backend."""
    global _cache
    if _cache is None:
        _cache = build_cache()
    return _cache


async def close_cache() -> None:
    global _cache
    if _cache is not None:
        await _cache.close()
        _cache = None
