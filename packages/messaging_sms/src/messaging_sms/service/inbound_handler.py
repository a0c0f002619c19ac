"""
Inbound Message Handler

Turns provider inbound callbacks into inbound message rows:
1. Parse the provider payload
2. Match the text to a conversation (campaign contact + assignment)
3. Insert the message once per (service, service_id)

Multi-part texts are stored as pending parts and combined once every
part has arrived. Depending on JOBS_SAME_PROCESS the conversion runs in
the webhook request (SameProcessIngest) or in the worker, fed through
the inbound part stream (DeferredIngest).
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from basecore.metrics import inbound_messages_total
from basecore.settings import Settings

from messaging_sms.persistence.models import PendingMessagePart, SendStatus, utcnow
from messaging_sms.persistence.repo import MessagingRepository
from messaging_sms.providers.base import InboundMessage, SMSProvider
from messaging_sms.providers.registry import get_provider_class
from messaging_sms.routing.conversation import ConversationMatch, ConversationMatcher
from messaging_sms.service.text import format_inbound_body, normalize_phone
from messaging_sms.streams.producer import InboundPartProducer

logger = logging.getLogger(__name__)

# parts stored further apart than this never belong to the same message
PART_GROUP_WINDOW = timedelta(hours=24)


def _strip_nul(value: str) -> str:
    # postgres text columns reject NUL
    return value.replace("\x00", "")


def _as_utc(value: datetime) -> datetime:
    # sqlite returns naive datetimes
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def inbound_message_values(
    service: str,
    message: InboundMessage,
    match: ConversationMatch,
    raw_payloads: list[dict[str, Any]],
) -> dict[str, Any]:
    """Column values for an inbound message row."""
    return {
        "campaign_contact_id": match.campaign_contact_id,
        "assignment_id": match.assignment_id,
        "contact_number": normalize_phone(message.from_phone),
        "user_number": normalize_phone(message.to_phone) if message.to_phone else "",
        "is_from_contact": True,
        "text": format_inbound_body(message.body, message.num_media),
        "service": service,
        "service_id": message.message_id,
        "send_status": SendStatus.DELIVERED.value,
        "service_response": _strip_nul(json.dumps(raw_payloads, default=str)),
        "num_segments": message.num_segments,
        "num_media": message.num_media,
    }


def _parser_for(service_type: str) -> SMSProvider:
    # parsing needs no credentials
    return get_provider_class(service_type)("", None, "")


def _parse_part(parser: SMSProvider, row: PendingMessagePart) -> InboundMessage:
    parsed = parser.parse_inbound_message(json.loads(row.service_message))
    # the stored id is the one the part was deduplicated on
    return replace(parsed, message_id=row.service_id)


class MessageConverter:
    """Matches a parsed inbound message and writes it."""

    def __init__(self, db: AsyncSession, matcher: ConversationMatcher | None = None):
        self.db = db
        self.repo = MessagingRepository(db)
        self.matcher = matcher or ConversationMatcher(db)

    async def save(
        self,
        service: str,
        message: InboundMessage,
        raw_payloads: list[dict[str, Any]],
    ) -> dict[str, Any]:
        contact_number = normalize_phone(message.from_phone)
        match = await self.matcher.match(service, contact_number, message.service_profile_id)
        if match is None:
            logger.error(
                "Could not match inbound message to a conversation",
                extra={
                    "service": service,
                    "service_id": message.message_id,
                    "messaging_service_sid": message.service_profile_id,
                },
            )
            inbound_messages_total.labels(result="unmatched").inc()
            return {"status": "dropped", "reason": "no_conversation", "service_id": message.message_id}

        created = await self.repo.insert_inbound_message(
            inbound_message_values(service, message, match, raw_payloads)
        )
        result = "created" if created else "duplicate"
        inbound_messages_total.labels(result=result).inc()

        logger.info(
            "Inbound message saved" if created else "Inbound message already saved",
            extra={
                "service": service,
                "service_id": message.message_id,
                "campaign_contact_id": match.campaign_contact_id,
            },
        )
        return {"status": result, "service_id": message.message_id}


class MessageReassembler:
    """
    Combines stored pending parts into inbound messages.

    A part's group is every unconsumed part for the same contact and
    provider with the same part reference, stored within group_window of
    it, so parts that raced each other into the table still end up in one
    message while a provider reusing a reference later starts a new one.
    """

    def __init__(
        self,
        db: AsyncSession,
        converter: MessageConverter | None = None,
        group_window: timedelta = PART_GROUP_WINDOW,
    ):
        self.db = db
        self.repo = MessagingRepository(db)
        self.converter = converter or MessageConverter(db)
        self.group_window = group_window

    async def process_part(self, part_id: int) -> dict[str, Any]:
        """
        Convert the message a part belongs to, if it is complete.

        Processing the same part again after its message was written finds
        it consumed and changes nothing.
        """
        part = await self.repo.get_part(part_id)
        if part is None:
            return {"status": "skipped", "reason": "part_not_found", "part_id": part_id}
        if part.consumed_at is not None:
            return {"status": "skipped", "reason": "already_converted", "part_id": part_id}

        parser = _parser_for(part.service)
        parsed = _parse_part(parser, part)

        if not parsed.is_multipart:
            group = [(part, parsed)]
        else:
            group = await self._load_group(part, parsed, parser)
            have = {p.part_number for _, p in group}
            if len(have) < parsed.part_total:
                logger.debug(
                    "Waiting for remaining message parts",
                    extra={"part_ref": parsed.part_ref, "have": len(have), "need": parsed.part_total},
                )
                return {
                    "status": "pending",
                    "part_id": part_id,
                    "have": len(have),
                    "need": parsed.part_total,
                }

        combined = self._combine([p for _, p in group])
        result = await self.converter.save(
            part.service,
            combined,
            [p.raw_payload for _, p in group],
        )
        await self.repo.mark_parts_consumed([row.id for row, _ in group])
        await self.db.commit()
        return result

    async def process_all_pending(self, limit: int = 500) -> dict[str, int]:
        """
        Sweep stored root parts; returns counts per result status.

        Parts consumed longer ago than group_window are purged afterwards.
        """
        counts: dict[str, int] = {}
        for part_id in await self.repo.list_root_part_ids(limit):
            result = await self.process_part(part_id)
            counts[result["status"]] = counts.get(result["status"], 0) + 1

        purged = await self.repo.purge_consumed_parts(utcnow() - self.group_window)
        await self.db.commit()
        if purged:
            logger.info("Purged consumed message parts", extra={"purged": purged})
        return counts

    async def _load_group(
        self,
        part: PendingMessagePart,
        parsed: InboundMessage,
        parser: SMSProvider,
    ) -> list[tuple[PendingMessagePart, InboundMessage]]:
        group: dict[int, tuple[PendingMessagePart, InboundMessage]] = {}
        stored_at = _as_utc(part.created_at)
        for row in await self.repo.list_parts_for_contact(part.service, part.contact_number):
            if abs(_as_utc(row.created_at) - stored_at) > self.group_window:
                continue
            other = parsed if row.id == part.id else _parse_part(parser, row)
            if other.part_ref != parsed.part_ref:
                continue
            # a part number seen twice keeps the first stored copy
            group.setdefault(other.part_number, (row, other))
        return [group[number] for number in sorted(group)]

    @staticmethod
    def _combine(parts: list[InboundMessage]) -> InboundMessage:
        first = parts[0]
        if len(parts) == 1:
            return first
        media_urls: list[str] = []
        for p in parts:
            media_urls.extend(p.media_urls)
        return InboundMessage(
            message_id=first.message_id,
            from_phone=first.from_phone,
            to_phone=first.to_phone,
            body="".join(p.body for p in parts),
            received_at=max(p.received_at for p in parts),
            num_segments=first.part_total,
            num_media=sum(p.num_media for p in parts),
            media_urls=media_urls,
            service_profile_id=first.service_profile_id,
            part_ref=first.part_ref,
            part_number=1,
            part_total=first.part_total,
            raw_payload=first.raw_payload,
        )


class IngestInbound(ABC):
    """How an accepted inbound callback becomes a message."""

    def __init__(
        self,
        db: AsyncSession,
        producer: InboundPartProducer | None = None,
        group_window: timedelta = PART_GROUP_WINDOW,
    ):
        self.db = db
        self.repo = MessagingRepository(db)
        self.producer = producer
        self.group_window = group_window

    @abstractmethod
    async def handle_incoming_message(
        self,
        provider: SMSProvider,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        """Handle one validated inbound callback payload."""
        ...

    async def _store_part(self, provider: SMSProvider, message: InboundMessage) -> PendingMessagePart | None:
        """
        Store an inbound part for reassembly.

        Returns None for a redelivered part whose message was already
        written, either as the message itself or as a consumed part.
        """
        service = provider.service_type
        if await self.repo.get_message_by_service_id(service, message.message_id) is not None:
            self._log_redelivery(service, message)
            return None

        contact_number = normalize_phone(message.from_phone)
        parent_id = None
        if message.is_multipart:
            parent_id = await self._find_root_part(provider, contact_number, message)

        part = await self.repo.store_part(
            service=service,
            service_id=message.message_id,
            service_message=_strip_nul(json.dumps(message.raw_payload, default=str)),
            contact_number=contact_number,
            user_number=normalize_phone(message.to_phone) if message.to_phone else "",
            parent_id=parent_id,
        )
        await self.db.commit()
        if part.consumed_at is not None:
            self._log_redelivery(service, message)
            return None
        return part

    async def _find_root_part(
        self,
        provider: SMSProvider,
        contact_number: str,
        message: InboundMessage,
    ) -> int | None:
        oldest = utcnow() - self.group_window
        for row in await self.repo.list_parts_for_contact(provider.service_type, contact_number):
            if row.parent_id is not None or row.service_id == message.message_id:
                continue
            if _as_utc(row.created_at) < oldest:
                continue
            stored = provider.parse_inbound_message(json.loads(row.service_message))
            if stored.part_ref == message.part_ref:
                return row.id
        return None

    @staticmethod
    def _log_redelivery(service: str, message: InboundMessage) -> None:
        inbound_messages_total.labels(result="duplicate").inc()
        logger.info(
            "Dropping redelivered inbound part",
            extra={"service": service, "service_id": message.message_id},
        )

    @staticmethod
    def _duplicate(message: InboundMessage) -> dict[str, Any]:
        return {"status": "duplicate", "service_id": message.message_id}


class SameProcessIngest(IngestInbound):
    """Converts inside the webhook request."""

    async def handle_incoming_message(
        self,
        provider: SMSProvider,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        message = provider.parse_inbound_message(payload)

        if message.is_multipart:
            part = await self._store_part(provider, message)
            if part is None:
                return self._duplicate(message)
            reassembler = MessageReassembler(self.db, group_window=self.group_window)
            return await reassembler.process_part(part.id)

        result = await MessageConverter(self.db).save(provider.service_type, message, [payload])
        await self.db.commit()
        return result


class DeferredIngest(IngestInbound):
    """Stores the part and hands it to the worker through the stream."""

    async def handle_incoming_message(
        self,
        provider: SMSProvider,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        if self.producer is None:
            raise RuntimeError("DeferredIngest requires an inbound part producer")

        message = provider.parse_inbound_message(payload)
        part = await self._store_part(provider, message)
        if part is None:
            return self._duplicate(message)
        await self.producer.publish_part(
            part.id,
            provider.service_type,
            correlation_id=message.message_id,
        )
        inbound_messages_total.labels(result="queued").inc()
        return {"status": "queued", "part_id": part.id, "service_id": message.message_id}


def select_ingest(settings: Settings) -> type[IngestInbound]:
    """Pick the ingest strategy once, at process startup."""
    return SameProcessIngest if settings.JOBS_SAME_PROCESS else DeferredIngest
