"""
Tests for the inbound part stream producer and consumer.
"""

import json

import pytest

from messaging_sms.contracts.envelope import MessagingEnvelope
from messaging_sms.contracts.event_types import MessagingEventType
from messaging_sms.streams.consumer import SMSStreamConsumer
from messaging_sms.streams.groups import DLQ_STREAM, INBOUND_STREAM
from messaging_sms.streams.producer import InboundPartProducer


class InMemoryStreams:
    """The slice of the Redis stream commands the producer and consumer use."""

    def __init__(self):
        self.entries: dict[str, list[tuple[str, dict[str, str]]]] = {}
        self.delivered: dict[str, int] = {}
        self.pending: dict[str, dict[str, dict]] = {}
        self.idle_ms = 0

    async def xadd(self, name, fields, maxlen=None, approximate=True):
        stream = self.entries.setdefault(name, [])
        msg_id = f"{len(stream) + 1}-0"
        stream.append((msg_id, dict(fields)))
        return msg_id

    async def xreadgroup(self, groupname, consumername, streams, count=None, block=None):
        result = []
        for name in streams:
            fresh = [e for e in self.entries.get(name, []) if e[0] not in self.delivered][:count]
            for msg_id, _ in fresh:
                self.delivered[msg_id] = 1
                self.pending.setdefault(name, {})[msg_id] = {"consumer": consumername}
            if fresh:
                result.append((name, fresh))
        return result

    async def xack(self, name, groupname, *ids):
        acked = 0
        for msg_id in ids:
            if self.pending.get(name, {}).pop(msg_id, None) is not None:
                acked += 1
        return acked

    async def xpending_range(self, name, groupname, min, max, count):
        return [
            {
                "message_id": msg_id,
                "consumer": info["consumer"],
                "time_since_delivered": self.idle_ms,
                "times_delivered": self.delivered[msg_id],
            }
            for msg_id, info in list(self.pending.get(name, {}).items())[:count]
        ]

    async def xclaim(self, name, groupname, consumername, min_idle_time, message_ids):
        claimed = []
        for msg_id, data in self.entries.get(name, []):
            if msg_id in message_ids:
                self.delivered[msg_id] += 1
                self.pending[name][msg_id] = {"consumer": consumername}
                claimed.append((msg_id, data))
        return claimed


@pytest.fixture
def redis_double():
    return InMemoryStreams()


class TestInboundPartProducer:
    """Tests for InboundPartProducer."""

    async def test_publish_part(self, redis_double):
        """Test a stored part is announced with its id and provider."""
        producer = InboundPartProducer(redis_double)

        msg_id = await producer.publish_part(42, "nexmo", correlation_id="P1")

        assert msg_id == "1-0"
        _, data = redis_double.entries[INBOUND_STREAM][0]
        assert data["event_type"] == MessagingEventType.INBOUND_PART_STORED.value
        assert json.loads(data["payload"]) == {"part_id": 42, "service": "nexmo"}
        assert data["correlation_id"] == "P1"

    async def test_publish_to_dlq(self, redis_double):
        """Test a parked event keeps the original envelope and the error."""
        producer = InboundPartProducer(redis_double)
        original = MessagingEnvelope.create(
            event_type=MessagingEventType.INBOUND_PART_STORED.value,
            payload={"part_id": 1, "service": "twilio"},
            correlation_id="SM1",
        )

        await producer.publish_to_dlq(original, error="boom", delivery_count=6)

        _, data = redis_double.entries[DLQ_STREAM][0]
        payload = json.loads(data["payload"])
        assert data["event_type"] == MessagingEventType.DLQ_ENTRY.value
        assert payload["original_event"]["event_id"] == str(original.event_id)
        assert payload["error"] == "boom"
        assert payload["delivery_count"] == 6
        assert data["correlation_id"] == "SM1"


class TestSMSStreamConsumer:
    """Tests for SMSStreamConsumer."""

    async def test_read_published_part(self, redis_double):
        """Test a published part is read back as an envelope."""
        await InboundPartProducer(redis_double).publish_part(7, "twilio")
        consumer = SMSStreamConsumer(redis_double, "worker-1")

        messages = await consumer.read_messages(INBOUND_STREAM)

        assert len(messages) == 1
        msg_id, envelope = messages[0]
        assert envelope.payload == {"part_id": 7, "service": "twilio"}
        assert envelope.metadata["stream_msg_id"] == msg_id

    async def test_invalid_entries_acked(self, redis_double):
        """Test entries that are not envelopes are acknowledged and skipped."""
        await redis_double.xadd(INBOUND_STREAM, {"garbage": "1"})
        await InboundPartProducer(redis_double).publish_part(7, "twilio")
        consumer = SMSStreamConsumer(redis_double, "worker-1")

        messages = await consumer.read_messages(INBOUND_STREAM)

        assert [m[0] for m in messages] == ["2-0"]
        assert list(redis_double.pending[INBOUND_STREAM]) == ["2-0"]

    async def test_ack_removes_pending(self, redis_double):
        """Test an acknowledged entry is no longer pending."""
        await InboundPartProducer(redis_double).publish_part(7, "twilio")
        consumer = SMSStreamConsumer(redis_double, "worker-1")
        [(msg_id, _)] = await consumer.read_messages(INBOUND_STREAM)

        assert await consumer.ack(INBOUND_STREAM, msg_id) == 1
        assert await consumer.get_pending(INBOUND_STREAM, min_idle_ms=0) == []

    async def test_reclaim_only_idle(self, redis_double):
        """Test only entries idle past the threshold are reclaimed."""
        await InboundPartProducer(redis_double).publish_part(7, "twilio")
        await SMSStreamConsumer(redis_double, "worker-1").read_messages(INBOUND_STREAM)
        rescuer = SMSStreamConsumer(redis_double, "worker-2")

        redis_double.idle_ms = 1000
        assert await rescuer.reclaim_pending(INBOUND_STREAM, min_idle_ms=60000) == []

        redis_double.idle_ms = 120000
        reclaimed = await rescuer.reclaim_pending(INBOUND_STREAM, min_idle_ms=60000)

        assert len(reclaimed) == 1
        msg_id, envelope, delivery_count = reclaimed[0]
        assert envelope.payload["part_id"] == 7
        assert delivery_count == 1
        assert redis_double.pending[INBOUND_STREAM][msg_id]["consumer"] == "worker-2"
