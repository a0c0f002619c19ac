"""
Tests for inbound message ingestion and multipart reassembly.
"""

import json
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from messaging_sms.persistence.models import Message, MessagingService, PendingMessagePart, SendStatus, utcnow
from messaging_sms.providers.fake import FakeServiceProvider
from messaging_sms.providers.nexmo import NexmoProvider
from messaging_sms.service.inbound_handler import (
    DeferredIngest,
    MessageReassembler,
    SameProcessIngest,
    select_ingest,
)
from messaging_sms.service.text import MEDIA_NOTICE

CONTACT_CELL = "+15555550100"
USER_NUMBER = "+15555550199"

NEXMO_API_KEY = "nexmo-api-key"


class RecordingProducer:
    """Stands in for InboundPartProducer and records published parts."""

    def __init__(self):
        self.published = []

    async def publish_part(self, part_id, service, correlation_id=None):
        self.published.append((part_id, service, correlation_id))
        return f"1-{len(self.published)}"


def fake_inbound(service_id="IN1", text="Yes, count me in", contact_number=CONTACT_CELL, **extra):
    return {
        "service_id": service_id,
        "contact_number": contact_number,
        "user_number": USER_NUMBER,
        "text": text,
        **extra,
    }


def nexmo_part(message_id, part, total, text, ref="ref-1"):
    return {
        "api-key": NEXMO_API_KEY,
        "msisdn": "15555550100",
        "to": "15555550199",
        "messageId": message_id,
        "text": text,
        "type": "text",
        "concat": "true",
        "concat-ref": ref,
        "concat-part": str(part),
        "concat-total": str(total),
    }


async def inbound_rows(db):
    result = await db.execute(
        select(Message).where(Message.is_from_contact == True).order_by(Message.id)  # noqa: E712
    )
    return list(result.scalars())


async def part_count(db):
    """Parts still waiting to be combined."""
    result = await db.execute(
        select(func.count()).select_from(PendingMessagePart).where(PendingMessagePart.consumed_at.is_(None))
    )
    return result.scalar_one()


async def age_parts(db, days):
    await db.execute(
        update(PendingMessagePart).values(created_at=utcnow() - timedelta(days=days))
    )
    await db.commit()


@pytest.fixture
async def fake_conversation(seed, make_message):
    """An outbound message through the fake service to the seeded contact."""
    return await make_message(send_status=SendStatus.SENT, service="fakeservice", service_id="OUT1")


@pytest.fixture
async def nexmo_conversation(db, seed, make_message):
    """A Nexmo service in the seeded organization and an outbound message."""
    db.add(
        MessagingService(
            messaging_service_sid=NEXMO_API_KEY,
            organization_id=seed.organization_id,
            service_type="nexmo",
            account_sid="15555550199",
            encrypted_auth_token=None,
            is_active=True,
        )
    )
    await db.commit()
    return await make_message(send_status=SendStatus.SENT, service="nexmo", service_id="OUT1")


class TestSameProcessIngest:
    """Tests for SameProcessIngest."""

    async def test_single_part_created(self, db, fake_conversation):
        """Test an inbound text becomes a delivered message in the conversation."""
        result = await SameProcessIngest(db).handle_incoming_message(FakeServiceProvider(), fake_inbound())

        assert result == {"status": "created", "service_id": "IN1"}
        rows = await inbound_rows(db)
        assert len(rows) == 1
        row = rows[0]
        assert row.campaign_contact_id == 1
        assert row.assignment_id == 1
        assert row.contact_number == CONTACT_CELL
        assert row.user_number == USER_NUMBER
        assert row.text == "Yes, count me in"
        assert row.send_status == SendStatus.DELIVERED.value
        assert row.service == "fakeservice"
        assert json.loads(row.service_response) == [fake_inbound()]

    async def test_duplicate_webhook_saved_once(self, db, fake_conversation):
        """Test a redelivered callback does not create a second message."""
        ingest = SameProcessIngest(db)
        await ingest.handle_incoming_message(FakeServiceProvider(), fake_inbound())
        result = await ingest.handle_incoming_message(FakeServiceProvider(), fake_inbound())

        assert result["status"] == "duplicate"
        assert len(await inbound_rows(db)) == 1

    async def test_unmatched_number_dropped(self, db, fake_conversation):
        """Test a text from a number with no conversation is not stored."""
        result = await SameProcessIngest(db).handle_incoming_message(
            FakeServiceProvider(), fake_inbound(contact_number="+15555550111")
        )

        assert result["status"] == "dropped"
        assert await inbound_rows(db) == []

    async def test_media_only_message_gets_notice(self, db, fake_conversation):
        """Test an empty body with attachments stores the media notice."""
        await SameProcessIngest(db).handle_incoming_message(
            FakeServiceProvider(), fake_inbound(text="", num_media=2)
        )

        row = (await inbound_rows(db))[0]
        assert row.text == MEDIA_NOTICE.format(count=2)
        assert row.num_media == 2

    async def test_media_notice_appended_to_text(self, db, fake_conversation):
        """Test the notice follows the text after a blank line."""
        await SameProcessIngest(db).handle_incoming_message(
            FakeServiceProvider(), fake_inbound(text="see pic", num_media=1)
        )

        row = (await inbound_rows(db))[0]
        assert row.text == "see pic\n\n" + MEDIA_NOTICE.format(count=1)

    async def test_nul_bytes_stripped(self, db, fake_conversation):
        """Test NUL characters never reach the stored text or payload."""
        await SameProcessIngest(db).handle_incoming_message(
            FakeServiceProvider(), fake_inbound(text="hi\x00there")
        )

        row = (await inbound_rows(db))[0]
        assert row.text == "hithere"
        assert "\x00" not in row.service_response


class TestMultipartReassembly:
    """Tests for concatenated inbound texts."""

    async def test_out_of_order_parts_combined(self, db, nexmo_conversation):
        """Test parts arriving last-first are joined in part order."""
        ingest = SameProcessIngest(db)
        provider = NexmoProvider(NEXMO_API_KEY, None, "secret")

        first = await ingest.handle_incoming_message(provider, nexmo_part("P2", 2, 2, "world"))
        assert first["status"] == "pending"
        assert await inbound_rows(db) == []

        second = await ingest.handle_incoming_message(provider, nexmo_part("P1", 1, 2, "Hello "))
        assert second["status"] == "created"

        rows = await inbound_rows(db)
        assert len(rows) == 1
        assert rows[0].text == "Hello world"
        assert rows[0].service_id == "P1"
        assert rows[0].num_segments == 2
        assert rows[0].campaign_contact_id == 1
        assert len(json.loads(rows[0].service_response)) == 2
        assert await part_count(db) == 0

    async def test_reprocessing_a_converted_part_is_noop(self, db, nexmo_conversation):
        """Test processing a part again after conversion changes nothing."""
        ingest = SameProcessIngest(db)
        provider = NexmoProvider(NEXMO_API_KEY, None, "secret")
        pending = await ingest.handle_incoming_message(provider, nexmo_part("P1", 1, 2, "Hello "))
        await ingest.handle_incoming_message(provider, nexmo_part("P2", 2, 2, "world"))

        result = await MessageReassembler(db).process_part(pending["part_id"])

        assert result["status"] == "skipped"
        assert result["reason"] == "already_converted"
        assert len(await inbound_rows(db)) == 1

    async def test_repeated_part_stored_once(self, db, nexmo_conversation):
        """Test a redelivered part does not count twice toward completion."""
        ingest = SameProcessIngest(db)
        provider = NexmoProvider(NEXMO_API_KEY, None, "secret")
        await ingest.handle_incoming_message(provider, nexmo_part("P1", 1, 3, "a"))
        result = await ingest.handle_incoming_message(provider, nexmo_part("P1", 1, 3, "a"))

        assert result["status"] == "pending"
        assert result["have"] == 1
        assert await part_count(db) == 1

    async def test_groups_kept_apart_by_reference(self, db, nexmo_conversation):
        """Test parts of two concatenated texts are not mixed."""
        ingest = SameProcessIngest(db)
        provider = NexmoProvider(NEXMO_API_KEY, None, "secret")
        await ingest.handle_incoming_message(provider, nexmo_part("A1", 1, 2, "one ", ref="A"))
        await ingest.handle_incoming_message(provider, nexmo_part("B1", 1, 2, "uno ", ref="B"))
        await ingest.handle_incoming_message(provider, nexmo_part("B2", 2, 2, "dos", ref="B"))

        rows = await inbound_rows(db)
        assert [row.text for row in rows] == ["uno dos"]
        assert await part_count(db) == 1

    async def test_redelivery_after_conversion_does_not_leak_into_reused_reference(
        self, db, nexmo_conversation
    ):
        """Test a late duplicate is dropped and a later text with the same reference stands alone."""
        ingest = SameProcessIngest(db)
        provider = NexmoProvider(NEXMO_API_KEY, None, "secret")
        await ingest.handle_incoming_message(provider, nexmo_part("P1", 1, 2, "Hello "))
        await ingest.handle_incoming_message(provider, nexmo_part("P2", 2, 2, "world"))

        again_second = await ingest.handle_incoming_message(provider, nexmo_part("P2", 2, 2, "world"))
        again_first = await ingest.handle_incoming_message(provider, nexmo_part("P1", 1, 2, "Hello "))

        assert again_second == {"status": "duplicate", "service_id": "P2"}
        assert again_first == {"status": "duplicate", "service_id": "P1"}
        assert await part_count(db) == 0

        first = await ingest.handle_incoming_message(provider, nexmo_part("Q1", 1, 2, "Vote "))
        assert first["status"] == "pending"
        assert first["have"] == 1
        second = await ingest.handle_incoming_message(provider, nexmo_part("Q2", 2, 2, "tomorrow"))
        assert second["status"] == "created"

        assert [row.text for row in await inbound_rows(db)] == ["Hello world", "Vote tomorrow"]
        assert await part_count(db) == 0
        assert await MessageReassembler(db).process_all_pending() == {}

    async def test_stale_part_not_combined_with_new_group(self, db, nexmo_conversation):
        """Test a part older than the group window is not joined to a newer text."""
        ingest = SameProcessIngest(db)
        provider = NexmoProvider(NEXMO_API_KEY, None, "secret")
        await ingest.handle_incoming_message(provider, nexmo_part("P2", 2, 2, "world"))
        await age_parts(db, days=2)

        first = await ingest.handle_incoming_message(provider, nexmo_part("Q1", 1, 2, "Vote "))
        assert first["status"] == "pending"
        assert first["have"] == 1
        second = await ingest.handle_incoming_message(provider, nexmo_part("Q2", 2, 2, "tomorrow"))

        assert second["status"] == "created"
        assert [row.text for row in await inbound_rows(db)] == ["Vote tomorrow"]
        # the stale part is still waiting on its own first part
        assert await part_count(db) == 1
        stored_first = (await db.execute(
            select(PendingMessagePart).where(PendingMessagePart.service_id == "Q1")
        )).scalar_one()
        assert stored_first.parent_id is None


class TestDeferredIngest:
    """Tests for DeferredIngest and the pending part sweep."""

    async def test_part_stored_and_published(self, db, fake_conversation):
        """Test the callback is stored and announced instead of converted."""
        producer = RecordingProducer()

        result = await DeferredIngest(db, producer).handle_incoming_message(
            FakeServiceProvider(), fake_inbound()
        )

        assert result["status"] == "queued"
        assert producer.published == [(result["part_id"], "fakeservice", "IN1")]
        assert await inbound_rows(db) == []
        assert await part_count(db) == 1

        converted = await MessageReassembler(db).process_part(result["part_id"])

        assert converted["status"] == "created"
        assert len(await inbound_rows(db)) == 1
        assert await part_count(db) == 0

    async def test_redelivery_after_conversion_not_published(self, db, fake_conversation):
        """Test a callback repeated after conversion is neither stored again nor announced."""
        producer = RecordingProducer()
        ingest = DeferredIngest(db, producer)
        queued = await ingest.handle_incoming_message(FakeServiceProvider(), fake_inbound())
        await MessageReassembler(db).process_part(queued["part_id"])

        result = await ingest.handle_incoming_message(FakeServiceProvider(), fake_inbound())

        assert result == {"status": "duplicate", "service_id": "IN1"}
        assert len(producer.published) == 1
        assert await part_count(db) == 0
        assert len(await inbound_rows(db)) == 1

    async def test_sweep_purges_old_consumed_parts(self, db, fake_conversation):
        """Test consumed parts are deleted once they are older than the group window."""
        ingest = DeferredIngest(db, RecordingProducer())
        queued = await ingest.handle_incoming_message(FakeServiceProvider(), fake_inbound())
        await MessageReassembler(db).process_part(queued["part_id"])
        await db.execute(
            update(PendingMessagePart).values(consumed_at=utcnow() - timedelta(days=2))
        )
        await db.commit()

        counts = await MessageReassembler(db).process_all_pending()

        assert counts == {}
        total = (await db.execute(select(func.count()).select_from(PendingMessagePart))).scalar_one()
        assert total == 0

    async def test_requires_producer(self, db, fake_conversation):
        """Test deferred ingest cannot run without a producer."""
        with pytest.raises(RuntimeError):
            await DeferredIngest(db).handle_incoming_message(FakeServiceProvider(), fake_inbound())

    async def test_process_all_pending(self, db, fake_conversation):
        """Test the sweep converts every stored root part."""
        ingest = DeferredIngest(db, RecordingProducer())
        await ingest.handle_incoming_message(FakeServiceProvider(), fake_inbound(service_id="IN1"))
        await ingest.handle_incoming_message(FakeServiceProvider(), fake_inbound(service_id="IN2"))

        counts = await MessageReassembler(db).process_all_pending()

        assert counts == {"created": 2}
        assert [row.service_id for row in await inbound_rows(db)] == ["IN1", "IN2"]


class TestSelectIngest:
    """Tests for select_ingest."""

    def test_same_process(self, settings):
        """Test JOBS_SAME_PROCESS picks in-request conversion."""
        assert select_ingest(settings) is SameProcessIngest

    def test_deferred(self, settings):
        """Test the worker path is picked otherwise."""
        assert select_ingest(settings.model_copy(update={"JOBS_SAME_PROCESS": False})) is DeferredIngest
