"""Redis client backing the pub/sub notification channel.

Only connected when ``notification_channel = "redis"``; the in-memory channel
needs no Redis at all.

Usage:
    from service_clearinghouse.infrastructure.redis_client import get_redis

    await get_redis().publish("notifications:user-1", payload)
"""

from __future__ import annotations

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from service_clearinghouse.config import get_settings
from service_clearinghouse.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis(url: str | None = None) -> aioredis.Redis:
    """Connect and verify the client. Called during app startup."""
    global _redis_client
    url = url or get_settings().redis_url
    _redis_client = aioredis.from_url(url, decode_responses=True)
    await _redis_client.ping()
    logger.info("redis.connected", url=url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def redis_configured() -> bool:
    return _redis_client is not None


async def ping_redis() -> str:
    """``connected``, ``disabled`` or ``error`` for the health endpoint."""
    if _redis_client is None:
        return "disabled"
    try:
        await _redis_client.ping()
    except RedisError as exc:
        logger.warning("redis.ping_failed", error=str(exc))
        return "error"
    return "connected"


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None
