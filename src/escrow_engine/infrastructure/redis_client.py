"""Redis client for short-lived caches.

The only cache today holds trust scores keyed by wallet. It sits outside the
engine's correctness boundary: a cold or unreachable cache only costs an
extra trust-score lookup.

Usage:
    from escrow_engine.infrastructure.redis_client import get_redis, close_redis

    redis = get_redis()
    await redis.set("key", "value", ex=60)
"""

from __future__ import annotations

import json

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from escrow_engine.config import get_settings
from escrow_engine.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = get_settings()
    _redis_client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    # Verify connectivity
    await _redis_client.ping()
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def get_redis_or_none() -> aioredis.Redis | None:
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- JSON cache helpers ---


async def cache_get_json(redis: aioredis.Redis, key: str) -> dict | None:
    """Return the cached JSON object at ``key``; a miss or a Redis error gives None."""
    try:
        raw = await redis.get(key)
    except RedisError as exc:
        logger.warning("redis.cache_read_failed", key=key, error=str(exc))
        return None
    if raw is None:
        return None
    return json.loads(raw)


async def cache_set_json(redis: aioredis.Redis, key: str, value: dict, ttl_seconds: int) -> None:
    try:
        await redis.set(key, json.dumps(value), ex=ttl_seconds)
    except RedisError as exc:
        logger.warning("redis.cache_write_failed", key=key, error=str(exc))
