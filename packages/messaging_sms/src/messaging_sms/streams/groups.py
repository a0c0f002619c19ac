"""
Redis Stream Configuration

Stream names, consumer groups, and setup utilities.
"""

import logging
from dataclasses import dataclass

import redis.asyncio as aioredis

from basecore.redis import ensure_stream_group

logger = logging.getLogger(__name__)

# Stream names
INBOUND_STREAM = "bc:sms:inbound"
DLQ_STREAM = "bc:sms:dlq"

# Consumer group
SMS_GROUP = "sms-engine"


@dataclass
class StreamConfig:
    """Configuration for a stream and its consumer group."""

    stream_name: str
    group_name: str
    max_len: int = 100000
    start_id: str = "0"  # "0" = all history, "$" = new only


STREAM_CONFIGS = [
    StreamConfig(INBOUND_STREAM, SMS_GROUP),
    StreamConfig(DLQ_STREAM, SMS_GROUP),
]


async def ensure_sms_streams(client: aioredis.Redis) -> None:
    """
    Ensure all messaging streams and consumer groups exist.

    Called on startup by the webhook and worker services.
    """
    for config in STREAM_CONFIGS:
        await ensure_stream_group(
            client,
            config.stream_name,
            config.group_name,
            config.start_id,
        )
