"""
Messaging service cache

Read-through cache for messaging_service rows, used on webhook paths
where every callback looks its service up by id. Entries expire after a
fixed TTL; a stale or missing entry only costs a database read.
"""

import json
import logging
from typing import Any, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from messaging_sms.persistence.models import MessagingService

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "sms:messaging-service:"
ONE_HOUR = 60 * 60

CACHED_COLUMNS = (
    "messaging_service_sid",
    "organization_id",
    "service_type",
    "account_sid",
    "encrypted_auth_token",
    "is_active",
)


class ServiceCache(Protocol):
    async def get(self, messaging_service_sid: str) -> MessagingService | None: ...

    async def set(self, service: MessagingService) -> None: ...

    async def invalidate(self, messaging_service_sid: str) -> None: ...


def service_to_dict(service: MessagingService) -> dict[str, Any]:
    return {column: getattr(service, column) for column in CACHED_COLUMNS}


class RedisServiceCache:
    """
    ServiceCache backed by Redis string keys with an expiry.

    Cached rows are detached MessagingService instances: read them, never
    add them to a session. Redis failures are logged and treated as misses.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        ttl_seconds: int = ONE_HOUR,
        prefix: str = CACHE_KEY_PREFIX,
    ):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    def _key(self, messaging_service_sid: str) -> str:
        return f"{self.prefix}{messaging_service_sid}"

    async def get(self, messaging_service_sid: str) -> MessagingService | None:
        try:
            data = await self.redis.get(self._key(messaging_service_sid))
        except RedisError as e:
            logger.warning(f"Service cache read failed: {e}")
            return None
        if not data:
            return None
        return MessagingService(**json.loads(data))

    async def set(self, service: MessagingService) -> None:
        try:
            await self.redis.set(
                self._key(service.messaging_service_sid),
                json.dumps(service_to_dict(service)),
                ex=self.ttl_seconds,
            )
        except RedisError as e:
            logger.warning(f"Service cache write failed: {e}")

    async def invalidate(self, messaging_service_sid: str) -> None:
        try:
            await self.redis.delete(self._key(messaging_service_sid))
        except RedisError as e:
            logger.warning(f"Service cache invalidation failed: {e}")
