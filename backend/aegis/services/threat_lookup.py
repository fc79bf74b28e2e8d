"""Cache-aside lookup of file hashes against the signature store.

Verdicts, negative ones included, are cached under ``threat:<sha256>``.
If the cache cannot be read every hash is resolved from the database; if
it cannot be written the verdicts are still returned.
"""

import json
import logging
from typing import Any

from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from aegis.db.models import ThreatSignature, ThreatType
from aegis.services.cache import CacheBackend

logger = logging.getLogger(__name__)


def cache_key(sha256: str) -> str:
    return f"threat:{sha256}"


def _verdict(sha256: str, signature: ThreatSignature | None) -> dict[str, Any]:
    if signature is None:
        return {"hash": sha256, "isThreat": False}
    return {
        "hash": sha256,
        "isThreat": True,
        "threatName": signature.threat_name,
        "severity": signature.severity,
        "category": signature.category,
    }


async def _read_cached(cache: CacheBackend, hashes: list[str]) -> dict[str, dict]:
    try:
        raw = await cache.get_many([cache_key(h) for h in hashes])
    except (RedisError, OSError) as e:
        logger.warning("Verdict cache unavailable, resolving %d hashes from DB: %s", len(hashes), e)
        return {}

    found: dict[str, dict] = {}
    for sha256, value in zip(hashes, raw):
        if value is None:
            continue
        try:
            found[sha256] = json.loads(value)
        except ValueError:
            logger.warning("Discarding unreadable cache entry for %s", sha256)
    return found


async def check_hashes(
    db: AsyncSession,
    cache: CacheBackend,
    hashes: list[str],
    ttl_seconds: int,
) -> list[dict[str, Any]]:
    """Return one verdict per input hash, in request order."""
    unique = list(dict.fromkeys(hashes))
    verdicts = await _read_cached(cache, unique)

    misses = [h for h in unique if h not in verdicts]
    if misses:
        rows = (
            await db.execute(
                select(ThreatSignature).where(
                    ThreatSignature.signature.in_(misses),
                    ThreatSignature.type == ThreatType.HASH.value,
                    ThreatSignature.is_active.is_(True),
                )
            )
        ).scalars().all()
        by_signature = {row.signature: row for row in rows}

        fresh = {h: _verdict(h, by_signature.get(h)) for h in misses}
        verdicts.update(fresh)
        try:
            await cache.set_many(
                {cache_key(h): json.dumps(v) for h, v in fresh.items()},
                ttl_seconds,
            )
        except (RedisError, OSError) as e:
            logger.warning("Could not cache %d verdicts: %s", len(fresh), e)

    return [verdicts[h] for h in hashes]


async def invalidate_hashes(cache: CacheBackend, hashes: list[str]) -> None:
    """Drop cached verdicts after the signature store changed."""
    if not hashes:
        return
    try:
        await cache.delete(*(cache_key(h) for h in hashes))
    except (RedisError, OSError) as e:
        logger.warning("Could not invalidate %d cached verdicts: %s", len(hashes), e)
