"""
Inbound Part Producer

Announces stored pending message parts to the worker, and parks events
the worker keeps failing on in the DLQ stream.
"""

import logging

import redis.asyncio as aioredis

from messaging_sms.contracts.envelope import MessagingEnvelope
from messaging_sms.streams.groups import DLQ_STREAM, INBOUND_STREAM

logger = logging.getLogger(__name__)

DEFAULT_MAX_LEN = 100000


class InboundPartProducer:
    """
    Producer for the inbound part stream.

    The stream only carries part ids; the part itself lives in
    pending_message_part, so a lost or repeated stream entry never loses
    or duplicates message content.
    """

    def __init__(self, redis_client: aioredis.Redis, max_len: int = DEFAULT_MAX_LEN):
        self.redis = redis_client
        self.max_len = max_len

    async def publish_part(
        self,
        part_id: int,
        service: str,
        correlation_id: str | None = None,
    ) -> str:
        """
        Announce a stored pending message part.

        Returns:
            Stream message ID
        """
        envelope = MessagingEnvelope.inbound_part_stored(part_id, service, correlation_id)
        return await self._xadd(INBOUND_STREAM, envelope)

    async def publish_to_dlq(
        self,
        original_envelope: MessagingEnvelope,
        error: str,
        delivery_count: int,
    ) -> str:
        """
        Park an event that keeps failing.

        Returns:
            Stream message ID
        """
        envelope = MessagingEnvelope.dlq_entry(original_envelope, error, delivery_count)
        return await self._xadd(DLQ_STREAM, envelope)

    async def _xadd(self, stream_name: str, envelope: MessagingEnvelope) -> str:
        msg_id = await self.redis.xadd(
            stream_name,
            envelope.to_stream_data(),
            maxlen=self.max_len,
            approximate=True,
        )
        logger.debug(
            f"Published {envelope.event_type}",
            extra={
                "stream": stream_name,
                "event_id": str(envelope.event_id),
                "msg_id": msg_id,
                "correlation_id": envelope.correlation_id,
            },
        )
        return msg_id
