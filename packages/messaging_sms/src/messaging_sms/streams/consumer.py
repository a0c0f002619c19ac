"""
Messaging Stream Consumer

Consumes events from Redis Streams using XREADGROUP.
"""

import logging
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import ResponseError

from messaging_sms.contracts.envelope import MessagingEnvelope
from messaging_sms.streams.groups import SMS_GROUP

logger = logging.getLogger(__name__)


class SMSStreamConsumer:
    """
    Consumer for reading messaging events from Redis Streams.

    Uses XREADGROUP for consumer group support and reliable delivery.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        consumer_name: str,
        group_name: str = SMS_GROUP,
    ):
        self.redis = redis_client
        self.consumer_name = consumer_name
        self.group_name = group_name

    def _parse_entries(self, entries) -> tuple[list[tuple[str, MessagingEnvelope]], list[str]]:
        messages = []
        invalid = []
        for msg_id, data in entries:
            if not data:
                invalid.append(msg_id)
                continue
            try:
                messages.append((msg_id, MessagingEnvelope.from_stream_message(msg_id, data)))
            except (KeyError, ValueError) as e:
                logger.error(f"Failed to parse message {msg_id}: {e}")
                invalid.append(msg_id)
        return messages, invalid

    async def read_messages(
        self,
        stream_name: str,
        count: int = 10,
        block_ms: int = 5000,
    ) -> list[tuple[str, MessagingEnvelope]]:
        """
        Read new messages from a stream.

        Returns:
            List of (message_id, envelope) tuples
        """
        try:
            result = await self.redis.xreadgroup(
                self.group_name,
                self.consumer_name,
                {stream_name: ">"},
                count=count,
                block=block_ms,
            )
        except ResponseError as e:
            if "NOGROUP" in str(e):
                logger.error(f"Consumer group {self.group_name} does not exist for {stream_name}")
            raise

        if not result:
            return []

        messages: list[tuple[str, MessagingEnvelope]] = []
        for _stream, entries in result:
            parsed, invalid = self._parse_entries(entries)
            messages.extend(parsed)
            # ACK invalid messages to prevent blocking
            for msg_id in invalid:
                await self.ack(stream_name, msg_id)
        return messages

    async def ack(self, stream_name: str, message_id: str) -> int:
        """Acknowledge a message as processed."""
        return await self.redis.xack(stream_name, self.group_name, message_id)

    async def get_pending(
        self,
        stream_name: str,
        min_idle_ms: int = 60000,
        count: int = 100,
    ) -> list[dict[str, Any]]:
        """
        Get pending messages that have been idle too long.

        Returns:
            List of pending message info dicts
        """
        try:
            pending_range = await self.redis.xpending_range(
                stream_name,
                self.group_name,
                min="-",
                max="+",
                count=count,
            )
        except ResponseError:
            return []

        return [
            {
                "message_id": entry["message_id"],
                "consumer": entry["consumer"],
                "idle_ms": entry["time_since_delivered"],
                "delivery_count": entry["times_delivered"],
            }
            for entry in pending_range
            if entry.get("time_since_delivered", 0) >= min_idle_ms
        ]

    async def reclaim_pending(
        self,
        stream_name: str,
        min_idle_ms: int = 60000,
        count: int = 100,
    ) -> list[tuple[str, MessagingEnvelope, int]]:
        """
        Claim idle pending messages for this consumer.

        Returns:
            List of (message_id, envelope, delivery_count) tuples
        """
        pending = await self.get_pending(stream_name, min_idle_ms, count)
        if not pending:
            return []

        delivery_counts = {p["message_id"]: p["delivery_count"] for p in pending}
        try:
            result = await self.redis.xclaim(
                stream_name,
                self.group_name,
                self.consumer_name,
                min_idle_ms,
                list(delivery_counts),
            )
        except ResponseError as e:
            logger.error(f"Failed to claim messages: {e}")
            return []

        parsed, invalid = self._parse_entries(result)
        for msg_id in invalid:
            await self.ack(stream_name, msg_id)
        return [
            (msg_id, envelope, delivery_counts.get(msg_id, 1))
            for msg_id, envelope in parsed
        ]
