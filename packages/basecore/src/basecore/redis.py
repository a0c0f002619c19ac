"""
Redis client utilities for basecore.

Provides a lazily initialized asyncio Redis client to avoid import-time
connections, plus consumer-group setup for Redis Streams.
"""

import functools
import logging

import redis.asyncio as aioredis
from redis.exceptions import ResponseError

from basecore.settings import get_settings

logger = logging.getLogger(__name__)


@functools.lru_cache()
def get_redis_client() -> aioredis.Redis:
    """
    Get Redis client (cached).

    The connection pool is created on first use, not at import.
    """
    return aioredis.from_url(get_settings().REDIS_URL, decode_responses=True)


async def ensure_stream_group(
    client: aioredis.Redis,
    stream_name: str,
    group_name: str,
    start_id: str = "0",
) -> bool:
    """
    Ensure a consumer group exists for a stream.

    Creates the group (and the stream) if it doesn't exist. Safe to call
    multiple times.

    Args:
        client: Redis client
        stream_name: Name of the Redis stream
        group_name: Name of the consumer group
        start_id: ID from which to start reading ("0" = all, "$" = new only)

    Returns:
        True if group was created, False if it already existed
    """
    try:
        await client.xgroup_create(stream_name, group_name, id=start_id, mkstream=True)
        logger.info(f"Created consumer group '{group_name}' for stream '{stream_name}'")
        return True
    except ResponseError as e:
        if "BUSYGROUP" in str(e):
            return False
        raise
