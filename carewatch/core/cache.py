"""
Shared Redis client.

Redis is optional: when ``REDIS_URL`` is empty or the server does not answer a ping,
callers receive ``None`` and fall back to process-local state.
"""

from __future__ import annotations

import redis.asyncio as redis
import structlog

from carewatch.core.config import settings

logger = structlog.get_logger(__name__)

_redis_client: redis.Redis | None = None


async def init_cache() -> redis.Redis | None:
    """Create a singleton Redis client; degrade gracefully if unavailable."""
    global _redis_client

    if not settings.REDIS_URL:
        return None

    client = redis.from_url(settings.REDIS_URL, decode_responses=False)
    try:
        await client.ping()
    except (redis.RedisError, OSError) as exc:
        logger.warning("cache_ping_failed", error=str(exc))
        await client.aclose()
        return None

    _redis_client = client
    logger.info("cache_connected")
    return client


async def close_cache() -> None:
    """Close the Redis client on shutdown."""
    global _redis_client

    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


def get_cache_client() -> redis.Redis | None:
    """Expose the shared Redis client."""
    return _redis_client
