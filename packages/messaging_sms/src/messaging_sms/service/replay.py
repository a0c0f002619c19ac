"""
Failed Message Replay

Operator action: re-send outbound messages whose last attempt failed
before any provider accepted them.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from messaging_sms.errors import MessagingError
from messaging_sms.persistence.repo import MessagingRepository
from messaging_sms.service.outbound_handler import OutboundHandler

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 100
DEFAULT_BATCH_SIZE = 1000


async def replay_failed_messages(
    sessionmaker: async_sessionmaker[AsyncSession],
    since: datetime | None = None,
    until: datetime | None = None,
    service_type: str | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    concurrency: int = DEFAULT_CONCURRENCY,
    handler_factory: Callable[[AsyncSession], OutboundHandler] = OutboundHandler,
) -> dict[str, int]:
    """
    Re-send failed messages, `concurrency` at a time.

    Each send gets its own session. Messages that fail again stay in
    error and are not retried within the same run.

    Returns:
        Counts per send result status
    """
    async with sessionmaker() as db:
        candidates = await MessagingRepository(db).list_failed_messages(
            since=since,
            until=until,
            service_type=service_type,
            limit=batch_size,
        )

    logger.info(
        f"Replaying {len(candidates)} failed messages",
        extra={"service_type": service_type, "concurrency": concurrency},
    )

    semaphore = asyncio.Semaphore(concurrency)
    counts: dict[str, int] = {}

    async def resend(message_id: int, organization_id: int) -> None:
        async with semaphore, sessionmaker() as db:
            try:
                result: dict[str, Any] = await handler_factory(db).send_message(
                    message_id, organization_id
                )
                status = result["status"]
            except MessagingError as e:
                logger.error(
                    f"Could not replay message {message_id}: {e}",
                    extra={"message_id": message_id},
                )
                status = "error"
            counts[status] = counts.get(status, 0) + 1

    await asyncio.gather(*(resend(mid, org) for mid, org in candidates))
    return counts
