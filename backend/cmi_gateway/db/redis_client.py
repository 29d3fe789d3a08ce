"""
Redis Connection Setup

Creates the asyncio Redis client backing the transaction store.
Transaction records are plain string values with a TTL, so no schema
initialization is needed beyond a connectivity check at startup.
"""
import logging
from typing import Optional

import redis.asyncio as redis

from ..config import settings

logger = logging.getLogger(__name__)


def create_redis_client(url: Optional[str] = None) -> redis.Redis:
    """
    Build a Redis client from configuration.

    Responses are decoded to str since records are stored as JSON text.
    """
    return redis.Redis.from_url(
        url or settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout,
        socket_connect_timeout=settings.redis_connect_timeout,
    )


async def initialize_redis(url: Optional[str] = None) -> redis.Redis:
    """
    Open the Redis client and verify connectivity.

    This function is called during FastAPI startup.
    """
    client = create_redis_client(url)
    await client.ping()
    logger.info("Connected to Redis")
    return client


async def close_redis(client: redis.Redis) -> None:
    """Release the client's connection pool."""
    await client.aclose()
    logger.info("Redis connection closed")
