"""
Redis caching service for listing calendars.

CACHING STRATEGY
================

What we cache:
  - Availability query responses for a listing and date window
  - Cache key pattern: "availability:{listing_id}:{start}:{end}"

Why:
  - Calendar reads are far more frequent than reservations
  - A calendar is only advisory for display; `reserve` never reads the cache,
    it relies on the (listing_id, day) unique constraint

Invalidation strategy:
  - After any committed write to a listing's ledger, delete every key under
    "availability:{listing_id}:"
  - Short TTL as safety net

Redis is optional: every helper fails open and the caller falls back to the
database. The same connection is used to publish the transition feed.
"""

import json
from datetime import date
from typing import Optional

import redis.asyncio as redis
from rental_engine.core.config import get_settings
from rental_engine.core.logging import get_logger
from rental_engine.core.metrics import record_cache_operation

logger = get_logger(__name__)
settings = get_settings()

_redis_client: Optional[redis.Redis] = None


async def get_redis() -> Optional[redis.Redis]:
    """Get or create Redis connection. Returns None if Redis is disabled or down."""
    global _redis_client

    if not settings.REDIS_ENABLED:
        return None

    if _redis_client is None:
        try:
            _redis_client = redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
            )
            await _redis_client.ping()
            logger.info("redis_connected", url=settings.REDIS_URL)
        except Exception as e:
            logger.error("redis_connection_failed", error=str(e))
            _redis_client = None
            return None

    return _redis_client


async def close_redis() -> None:
    """Close Redis connection on shutdown."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


def _make_calendar_key(listing_id: int, start: date, end: date) -> str:
    return f"availability:{listing_id}:{start.isoformat()}:{end.isoformat()}"


async def get_cached_calendar(listing_id: int, start: date, end: date) -> Optional[list[dict]]:
    client = await get_redis()
    if not client:
        return None

    key = _make_calendar_key(listing_id, start, end)
    try:
        data = await client.get(key)
        record_cache_operation("get", hit=data is not None)
        if data:
            return json.loads(data)
    except Exception as e:
        logger.error("cache_get_error", key=key, error=str(e))

    return None


async def set_cached_calendar(listing_id: int, start: date, end: date, entries: list[dict]) -> None:
    client = await get_redis()
    if not client:
        return

    key = _make_calendar_key(listing_id, start, end)
    try:
        await client.setex(key, settings.REDIS_CACHE_TTL, json.dumps(entries, default=str))
        record_cache_operation("set", hit=True)
    except Exception as e:
        logger.error("cache_set_error", key=key, error=str(e))


async def invalidate_calendar_cache(listing_id: int) -> None:
    """Drop every cached window for one listing."""
    client = await get_redis()
    if not client:
        return

    try:
        deleted = 0
        async for key in client.scan_iter(match=f"availability:{listing_id}:*", count=100):
            await client.delete(key)
            deleted += 1
        logger.debug("calendar_cache_invalidated", listing_id=listing_id, keys_deleted=deleted)
    except Exception as e:
        logger.error("cache_invalidation_error", listing_id=listing_id, error=str(e))


async def get_cache_stats() -> dict:
    """Get Redis cache statistics for monitoring."""
    client = await get_redis()
    if not client:
        return {"status": "disabled"}

    try:
        info = await client.info("stats")
        hits = info.get("keyspace_hits", 0)
        misses = info.get("keyspace_misses", 0)
        return {
            "status": "connected",
            "hits": hits,
            "misses": misses,
            "hit_rate": round(hits / max(hits + misses, 1) * 100, 2),
        }
    except Exception as e:
        return {"status": "error", "error": str(e)}
