"""
SMS Worker Service

Consumes stored inbound parts announced on the inbound stream and turns
them into inbound messages (used when JOBS_SAME_PROCESS is off).

This worker uses ONLY:
- basecore (DB, settings, logging, redis)
- messaging_sms (handlers, contracts, streams)

Features:
- XREADGROUP consumer for horizontal scaling
- PEL reclaim for stuck entries, DLQ after too many deliveries
- Idempotent processing (re-processing a converted part is a no-op)
- Graceful shutdown
- Unhandled loop errors stop the process with exit code 1
"""

import asyncio
import contextlib
import logging
import os
import signal
import socket
import sys

from basecore.db import get_sessionmaker
from basecore.logging import setup_logging
from basecore.redis import get_redis_client
from basecore.settings import get_settings

from messaging_sms.contracts.envelope import MessagingEnvelope
from messaging_sms.contracts.event_types import MessagingEventType
from messaging_sms.service.inbound_handler import MessageReassembler
from messaging_sms.streams.consumer import SMSStreamConsumer
from messaging_sms.streams.groups import INBOUND_STREAM, ensure_sms_streams
from messaging_sms.streams.producer import InboundPartProducer

setup_logging()
logger = logging.getLogger(__name__)

settings = get_settings()

# Configuration
CONSUMER_NAME = settings.WORKER_CONSUMER_NAME or f"sms-worker-{socket.gethostname()}-{os.getpid()}"
BATCH_SIZE = settings.WORKER_BATCH_SIZE
BLOCK_MS = settings.WORKER_BLOCK_MS
RECLAIM_INTERVAL_SEC = settings.WORKER_RECLAIM_INTERVAL_SEC
RECLAIM_IDLE_MS = settings.WORKER_RECLAIM_IDLE_MS
MAX_DELIVERIES = settings.WORKER_MAX_DELIVERIES

# Graceful shutdown
shutdown_requested = False
exit_code = 0


def signal_handler(signum, frame):
    global shutdown_requested
    logger.info(f"Received signal {signum}, requesting shutdown...")
    shutdown_requested = True


def loop_exception_handler(loop, context):
    """Unhandled errors in background tasks are fatal."""
    global shutdown_requested, exit_code
    logger.critical(
        f"Unhandled error in worker: {context.get('message')}",
        exc_info=context.get("exception"),
    )
    exit_code = 1
    shutdown_requested = True


async def process_envelope(envelope: MessagingEnvelope) -> dict:
    """Convert the message a stored part belongs to."""
    if envelope.event_type != MessagingEventType.INBOUND_PART_STORED.value:
        logger.debug(f"Ignoring event type: {envelope.event_type}")
        return {"status": "ignored"}

    async with get_sessionmaker()() as db:
        return await MessageReassembler(db).process_part(envelope.part_id)


async def process_inbound_parts(consumer: SMSStreamConsumer) -> int:
    """Process new entries from the inbound stream."""
    messages = await consumer.read_messages(
        INBOUND_STREAM,
        count=BATCH_SIZE,
        block_ms=BLOCK_MS,
    )

    processed = 0
    for msg_id, envelope in messages:
        try:
            result = await process_envelope(envelope)
            await consumer.ack(INBOUND_STREAM, msg_id)
            processed += 1

            logger.debug(
                "Processed inbound part",
                extra={"msg_id": msg_id, "result": result},
            )

        except Exception as e:
            logger.error(
                f"Failed to process inbound part {msg_id}: {e}",
                exc_info=True,
            )
            # Don't ACK - will be reclaimed

    return processed


async def reclaim_once(consumer: SMSStreamConsumer, producer: InboundPartProducer) -> int:
    """Retry idle pending entries; park the ones that keep failing."""
    reclaimed = await consumer.reclaim_pending(
        INBOUND_STREAM,
        min_idle_ms=RECLAIM_IDLE_MS,
        count=100,
    )

    for msg_id, envelope, delivery_count in reclaimed:
        if delivery_count > MAX_DELIVERIES:
            await producer.publish_to_dlq(
                envelope,
                error=f"gave up after {delivery_count} deliveries",
                delivery_count=delivery_count,
            )
            await consumer.ack(INBOUND_STREAM, msg_id)
            logger.warning(
                "Moved inbound part to DLQ",
                extra={"msg_id": msg_id, "delivery_count": delivery_count},
            )
            continue

        try:
            await process_envelope(envelope)
            await consumer.ack(INBOUND_STREAM, msg_id)
        except Exception as e:
            logger.error(
                f"Failed to process reclaimed part {msg_id}: {e}",
                exc_info=True,
            )

    return len(reclaimed)


async def run_reclaim_loop(consumer: SMSStreamConsumer, producer: InboundPartProducer):
    """Background task for reclaiming pending entries."""
    logger.info(
        f"Starting PEL reclaim loop "
        f"(interval={RECLAIM_INTERVAL_SEC}s, idle_threshold={RECLAIM_IDLE_MS}ms)"
    )

    while not shutdown_requested:
        # Sleep first
        for _ in range(RECLAIM_INTERVAL_SEC):
            if shutdown_requested:
                return
            await asyncio.sleep(1)

        try:
            reclaimed = await reclaim_once(consumer, producer)
            if reclaimed:
                logger.info(f"Reclaimed {reclaimed} inbound parts")
        except Exception as e:
            logger.error(f"Error in reclaim loop: {e}", exc_info=True)


async def stop_task(task: asyncio.Task) -> None:
    """Cancel a background task and wait until it has finished."""
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


async def main_loop():
    """Main worker loop."""
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(loop_exception_handler)
    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, signal_handler)

    redis_client = get_redis_client()

    # Ensure streams exist
    await ensure_sms_streams(redis_client)

    consumer = SMSStreamConsumer(redis_client, CONSUMER_NAME)
    producer = InboundPartProducer(redis_client)

    logger.info(f"Starting SMS worker (consumer={CONSUMER_NAME}, batch={BATCH_SIZE})")

    reclaim_task = asyncio.create_task(run_reclaim_loop(consumer, producer))

    try:
        while not shutdown_requested:
            try:
                count = await process_inbound_parts(consumer)
                if count > 0:
                    logger.info(f"Processed {count} inbound parts")
                else:
                    await asyncio.sleep(0.1)

            except Exception as e:
                logger.error(f"Error in main loop: {e}", exc_info=True)
                await asyncio.sleep(1)
    finally:
        await stop_task(reclaim_task)
        await redis_client.aclose()

    logger.info("SMS worker shutting down gracefully")


def main():
    """Entry point."""
    logger.info("SMS worker starting...")
    try:
        asyncio.run(main_loop())
    except Exception:
        logger.critical("SMS worker crashed", exc_info=True)
        sys.exit(1)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
