"""Redis connection for the cross-process broadcast relay.

Only used when BROADCAST_BACKEND is "redis": RedisBroadcastRegistry
publishes change frames through it and keeps one long-lived pub/sub
subscription open, and the readiness check pings it.
"""

from __future__ import annotations

import redis.asyncio as aioredis
import structlog

from src.dealflow.config import get_settings

logger = structlog.get_logger(__name__)

# The subscriber connection can sit idle for minutes between deal changes;
# a periodic health check makes a dropped connection surface on the next
# read instead of hanging.
HEALTH_CHECK_INTERVAL_SECONDS = 30

_redis_pool: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis:
    """Lazily create the shared client."""
    global _redis_pool
    if _redis_pool is None:
        settings = get_settings()
        _redis_pool = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            health_check_interval=HEALTH_CHECK_INTERVAL_SECONDS,
            client_name="dealflow-broadcast",
        )
        logger.info("redis.client_created", channel=settings.BROADCAST_CHANNEL)
    return _redis_pool


async def ping_redis() -> str | None:
    """Ping the broadcast relay. Returns None when healthy, else an error text."""
    try:
        pong = await get_redis_pool().ping()
    except Exception as e:
        return str(e)
    return None if pong else "PING did not return PONG"


async def close_redis() -> None:
    global _redis_pool
    if _redis_pool is not None:
        await _redis_pool.aclose()
        _redis_pool = None
