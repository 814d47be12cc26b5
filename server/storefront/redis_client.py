"""
Redis client helpers (async).

Used by the OTP and checkout-session stores when
STOREFRONT_STORE_BACKEND=redis.
"""

import logging
from typing import Optional

from redis.asyncio import Redis

from .settings import settings


logger = logging.getLogger(__name__)

_redis: Optional[Redis] = None


async def get_redis() -> Redis:
    """
    Return a singleton Redis client.

    Raises if a connection cannot be established.
    """
    global _redis
    if _redis is not None:
        return _redis

    client = Redis.from_url(settings.redis_url, decode_responses=True)
    try:
        await client.ping()
    except Exception as e:
        await client.aclose()
        logger.warning(f"[redis] Failed to connect: {e}")
        raise

    _redis = client
    return _redis


async def close_redis() -> None:
    """Close the singleton Redis client."""
    global _redis
    if _redis is None:
        return
    try:
        await _redis.aclose()
    finally:
        _redis = None
