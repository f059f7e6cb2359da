"""Shared async Redis connection.

Usage:
    from libs.common.redis import get_redis

    redis = await get_redis()
    await redis.get("key")
"""

from typing import Optional

from redis import asyncio as aioredis

from libs.common.config import get_settings
from libs.common.logging import get_logger

logger = get_logger(__name__)

_redis: Optional[aioredis.Redis] = None


async def get_redis() -> aioredis.Redis:
    """Return the process-wide Redis client, creating it on first use."""
    global _redis
    if _redis is None:
        settings = get_settings()
        _redis = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None
