"""
Redis Cache Service
===================

Redis connection management and the webhook event-id ledger used to
acknowledge duplicate RevenueCat deliveries without reprocessing them.

Redis is best-effort here: if it is unreachable, checks report "not seen"
and marks are dropped, and the idempotent upsert keeps state correct.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.config import settings

logger = logging.getLogger(__name__)

# Global Redis client instance
_redis_client: Optional[Redis] = None

WEBHOOK_EVENT_PREFIX = "webhook:revenuecat:event:"


async def init_redis() -> Redis:
    """
    Initialize Redis connection pool and pre-warm a connection.

    Returns:
        Redis client instance
    """
    global _redis_client

    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            max_connections=20,
            socket_keepalive=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        await _redis_client.ping()
        logger.info("Redis connection established")

    return _redis_client


async def get_redis() -> Redis:
    """Get Redis client, initializing if necessary."""
    if _redis_client is None:
        return await init_redis()

    return _redis_client


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


def webhook_event_key(event_id: str) -> str:
    return f"{WEBHOOK_EVENT_PREFIX}{event_id}"


async def is_event_processed(event_id: str) -> bool:
    """Check if a webhook event id was already processed."""
    try:
        client = await get_redis()
        return await client.exists(webhook_event_key(event_id)) > 0
    except (RedisError, OSError) as exc:
        logger.warning("Redis idempotency check failed: %s", exc)
        return False


async def mark_event_processed(event_id: str) -> None:
    """Remember a processed webhook event id for ``WEBHOOK_EVENT_TTL_SECONDS``."""
    try:
        client = await get_redis()
        await client.setex(
            webhook_event_key(event_id),
            settings.WEBHOOK_EVENT_TTL_SECONDS,
            "1",
        )
    except (RedisError, OSError) as exc:
        logger.warning("Redis idempotency set failed: %s", exc)
