"""
Messaging Repository

Repository pattern for messaging core database operations.

Every status change goes through a single conditional UPDATE; nothing in
here reads a row, changes it in Python and writes it back.
"""

import json
from datetime import datetime
from typing import Any

from sqlalchemy import case, delete, func, literal, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from basecore.db import insert_ignore

from messaging_sms.persistence.models import (
    JSONType,
    Campaign,
    CampaignContact,
    DeliveryReportLog,
    Message,
    MessagingService,
    MessagingServiceStick,
    PendingMessagePart,
    SendStatus,
    STATUS_RANK,
    utcnow,
)

# Statuses from which a send attempt may start
SENDABLE_STATUSES = (SendStatus.QUEUED.value, SendStatus.ERROR.value)


def _status_rank_expr():
    """SQL expression for the advancement rank of message.send_status."""
    return case(
        *[(Message.send_status == status.value, rank) for status, rank in STATUS_RANK.items()],
        else_=0,
    )


class MessagingRepository:
    """Repository for messaging core database operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # =========================================================================
    # Messaging services
    # =========================================================================

    async def get_service(self, messaging_service_sid: str) -> MessagingService | None:
        """Get a messaging service by its provider-side id."""
        return await self.db.get(MessagingService, messaging_service_sid)

    async def list_active_services(self, organization_id: int) -> list[MessagingService]:
        """Active messaging services configured for an organization."""
        result = await self.db.execute(
            select(MessagingService)
            .where(
                MessagingService.organization_id == organization_id,
                MessagingService.is_active == True,  # noqa: E712
            )
            .order_by(MessagingService.created_at, MessagingService.messaging_service_sid)
        )
        return list(result.scalars())

    async def list_services(
        self,
        organization_id: int | None = None,
        include_inactive: bool = False,
    ) -> list[MessagingService]:
        query = select(MessagingService)
        if organization_id is not None:
            query = query.where(MessagingService.organization_id == organization_id)
        if not include_inactive:
            query = query.where(MessagingService.is_active == True)  # noqa: E712
        result = await self.db.execute(
            query.order_by(MessagingService.organization_id, MessagingService.created_at)
        )
        return list(result.scalars())

    def create_service(
        self,
        messaging_service_sid: str,
        organization_id: int,
        service_type: str,
        account_sid: str | None = None,
        encrypted_auth_token: str | None = None,
    ) -> MessagingService:
        service = MessagingService(
            messaging_service_sid=messaging_service_sid,
            organization_id=organization_id,
            service_type=service_type,
            account_sid=account_sid,
            encrypted_auth_token=encrypted_auth_token,
            is_active=True,
        )
        self.db.add(service)
        return service

    # =========================================================================
    # Service sticks
    # =========================================================================

    async def get_stick(self, cell: str, organization_id: int) -> MessagingServiceStick | None:
        result = await self.db.execute(
            select(MessagingServiceStick).where(
                MessagingServiceStick.cell == cell,
                MessagingServiceStick.organization_id == organization_id,
            )
        )
        return result.scalar_one_or_none()

    async def insert_stick_if_absent(
        self,
        cell: str,
        organization_id: int,
        messaging_service_sid: str,
    ) -> bool:
        """
        Create the (cell, organization) binding unless one already exists.

        Returns:
            True if this call created the row
        """
        stmt = (
            insert_ignore(self.db, MessagingServiceStick.__table__)
            .values(
                cell=cell,
                organization_id=organization_id,
                messaging_service_sid=messaging_service_sid,
                created_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["cell", "organization_id"])
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def get_stick_for_service(
        self,
        cell: str,
        messaging_service_sid: str,
    ) -> MessagingServiceStick | None:
        """Find the binding of a contact number to a given service."""
        result = await self.db.execute(
            select(MessagingServiceStick)
            .where(
                MessagingServiceStick.cell == cell,
                MessagingServiceStick.messaging_service_sid == messaging_service_sid,
            )
            .order_by(MessagingServiceStick.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    # =========================================================================
    # Campaign contacts
    # =========================================================================

    async def get_campaign_contact_with_org(
        self,
        campaign_contact_id: int,
    ) -> tuple[CampaignContact, int] | None:
        """Get a campaign contact and the organization owning its campaign."""
        result = await self.db.execute(
            select(CampaignContact, Campaign.organization_id)
            .join(Campaign, CampaignContact.campaign_id == Campaign.id)
            .where(CampaignContact.id == campaign_contact_id)
        )
        row = result.first()
        if row is None:
            return None
        return row[0], row[1]

    async def find_latest_conversation(
        self,
        organization_id: int,
        contact_number: str,
    ) -> tuple[int, int | None] | None:
        """
        Latest outbound conversation with a number in an organization.

        Only non-archived campaigns are considered.

        Returns:
            (campaign_contact_id, assignment_id) or None
        """
        result = await self.db.execute(
            select(CampaignContact.id, CampaignContact.assignment_id)
            .join(Message, Message.campaign_contact_id == CampaignContact.id)
            .join(Campaign, CampaignContact.campaign_id == Campaign.id)
            .where(
                Campaign.organization_id == organization_id,
                Campaign.is_archived == False,  # noqa: E712
                Message.contact_number == contact_number,
                Message.is_from_contact == False,  # noqa: E712
            )
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(1)
        )
        row = result.first()
        return (row[0], row[1]) if row else None

    async def find_last_message_conversation(
        self,
        service: str,
        contact_number: str,
    ) -> tuple[int, int | None] | None:
        """Conversation of the last message to a number sent through a service."""
        result = await self.db.execute(
            select(Message.campaign_contact_id, Message.assignment_id)
            .where(
                Message.service == service,
                Message.contact_number == contact_number,
                Message.is_from_contact == False,  # noqa: E712
                Message.campaign_contact_id.is_not(None),
            )
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(1)
        )
        row = result.first()
        return (row[0], row[1]) if row else None

    # =========================================================================
    # Messages
    # =========================================================================

    async def get_message(self, message_id: int) -> Message | None:
        return await self.db.get(Message, message_id)

    def create_message(
        self,
        contact_number: str,
        text: str,
        campaign_contact_id: int | None = None,
        assignment_id: int | None = None,
        user_id: int | None = None,
        user_number: str = "",
        send_status: SendStatus = SendStatus.QUEUED,
    ) -> Message:
        """Create an outbound message record (queued)."""
        message = Message(
            campaign_contact_id=campaign_contact_id,
            assignment_id=assignment_id,
            user_id=user_id,
            contact_number=contact_number,
            user_number=user_number,
            is_from_contact=False,
            text=text,
            send_status=send_status.value,
            service_response="",
        )
        self.db.add(message)
        return message

    async def claim_for_send(self, message_id: int) -> bool:
        """
        Move a message to `sending` if it is queued or errored.

        Returns:
            True if this caller owns the send attempt
        """
        result = await self.db.execute(
            update(Message)
            .where(Message.id == message_id, Message.send_status.in_(SENDABLE_STATUSES))
            .values(send_status=SendStatus.SENDING.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_sent(
        self,
        message_id: int,
        service: str,
        service_id: str,
        raw_response: Any,
        sent_at: datetime | None = None,
    ) -> bool:
        """Record a provider-accepted send. Only applies to the claimed attempt."""
        result = await self.db.execute(
            update(Message)
            .where(Message.id == message_id, Message.send_status == SendStatus.SENDING.value)
            .values(
                service=service,
                service_id=service_id,
                send_status=SendStatus.SENT.value,
                sent_at=sent_at or utcnow(),
                service_response=json.dumps([raw_response], default=str),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_send_error(self, message_id: int, service: str) -> bool:
        """Record a failed send attempt. Only applies to the claimed attempt."""
        result = await self.db.execute(
            update(Message)
            .where(Message.id == message_id, Message.send_status == SendStatus.SENDING.value)
            .values(service=service, send_status=SendStatus.ERROR.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def apply_delivery_report(
        self,
        service: str,
        service_id: str,
        status: SendStatus,
        error_codes: list[str] | None = None,
        num_segments: int | None = None,
        num_media: int | None = None,
        received_at: datetime | None = None,
    ) -> int:
        """
        Apply one delivery report in a single UPDATE.

        The status (with its error codes and response time) only moves to a
        higher rank, so terminal statuses are never replaced. Segment and
        media counts are filled only where still NULL, regardless of whether
        the status moved.

        Returns:
            Number of matched messages (0 when the provider id is unknown)
        """
        advances = _status_rank_expr() < status.rank
        values: dict[str, Any] = {
            "send_status": case((advances, status.value), else_=Message.send_status),
            "service_response_at": case(
                (advances, literal(received_at or utcnow(), type_=Message.service_response_at.type)),
                else_=Message.service_response_at,
            ),
            "num_segments": func.coalesce(Message.num_segments, num_segments),
            "num_media": func.coalesce(Message.num_media, num_media),
        }
        if error_codes:
            values["error_codes"] = case(
                (advances, literal(error_codes, type_=JSONType)),
                else_=Message.error_codes,
            )

        result = await self.db.execute(
            update(Message)
            .where(Message.service == service, Message.service_id == service_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def insert_inbound_message(self, values: dict[str, Any]) -> bool:
        """
        Insert an inbound message unless (service, service_id) already exists.

        Returns:
            True if a new row was written
        """
        stmt = (
            insert_ignore(self.db, Message.__table__)
            .values(created_at=utcnow(), **values)
            .on_conflict_do_nothing(index_elements=["service", "service_id"])
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def get_message_by_service_id(self, service: str, service_id: str) -> Message | None:
        result = await self.db.execute(
            select(Message).where(Message.service == service, Message.service_id == service_id)
        )
        return result.scalar_one_or_none()

    async def list_failed_messages(
        self,
        since: datetime | None = None,
        until: datetime | None = None,
        service_type: str | None = None,
        limit: int = 1000,
    ) -> list[tuple[int, int]]:
        """
        Outbound messages whose last attempt ended in error without a provider id.

        Returns:
            (message_id, organization_id) pairs, oldest first
        """
        query = (
            select(Message.id, Campaign.organization_id)
            .join(CampaignContact, Message.campaign_contact_id == CampaignContact.id)
            .join(Campaign, CampaignContact.campaign_id == Campaign.id)
            .where(
                Message.send_status == SendStatus.ERROR.value,
                Message.is_from_contact == False,  # noqa: E712
                CampaignContact.is_opted_out == False,  # noqa: E712
                or_(Message.service_id.is_(None), Message.service_id == ""),
            )
        )
        if since is not None:
            query = query.where(Message.created_at >= since)
        if until is not None:
            query = query.where(Message.created_at < until)
        if service_type is not None:
            query = query.join(
                MessagingServiceStick,
                (MessagingServiceStick.cell == Message.contact_number)
                & (MessagingServiceStick.organization_id == Campaign.organization_id),
            ).join(
                MessagingService,
                MessagingService.messaging_service_sid == MessagingServiceStick.messaging_service_sid,
            ).where(MessagingService.service_type == service_type)

        result = await self.db.execute(query.order_by(Message.id).limit(limit))
        return [(row[0], row[1]) for row in result]

    # =========================================================================
    # Pending message parts
    # =========================================================================

    async def store_part(
        self,
        service: str,
        service_id: str,
        service_message: str,
        contact_number: str,
        user_number: str = "",
        parent_id: int | None = None,
    ) -> PendingMessagePart:
        """
        Store an inbound part (once per provider part id) and return the row.

        A repeated webhook for the same part returns the row stored first.
        """
        stmt = (
            insert_ignore(self.db, PendingMessagePart.__table__)
            .values(
                service=service,
                service_id=service_id,
                parent_id=parent_id,
                service_message=service_message,
                contact_number=contact_number,
                user_number=user_number,
                created_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["service", "service_id"])
        )
        await self.db.execute(stmt)
        result = await self.db.execute(
            select(PendingMessagePart).where(
                PendingMessagePart.service == service,
                PendingMessagePart.service_id == service_id,
            )
        )
        return result.scalar_one()

    async def get_part(self, part_id: int) -> PendingMessagePart | None:
        return await self.db.get(PendingMessagePart, part_id)

    async def list_parts_for_contact(
        self,
        service: str,
        contact_number: str,
    ) -> list[PendingMessagePart]:
        """Parts from one contact that are still waiting to be combined."""
        result = await self.db.execute(
            select(PendingMessagePart)
            .where(
                PendingMessagePart.service == service,
                PendingMessagePart.contact_number == contact_number,
                PendingMessagePart.consumed_at.is_(None),
            )
            .order_by(PendingMessagePart.id)
        )
        return list(result.scalars())

    async def list_root_part_ids(self, limit: int = 500) -> list[int]:
        result = await self.db.execute(
            select(PendingMessagePart.id)
            .where(
                PendingMessagePart.parent_id.is_(None),
                PendingMessagePart.consumed_at.is_(None),
            )
            .order_by(PendingMessagePart.id)
            .limit(limit)
        )
        return list(result.scalars())

    async def mark_parts_consumed(self, part_ids: list[int]) -> int:
        """Flag parts as folded into a message. Already consumed parts are left alone."""
        if not part_ids:
            return 0
        result = await self.db.execute(
            update(PendingMessagePart)
            .where(
                PendingMessagePart.id.in_(part_ids),
                PendingMessagePart.consumed_at.is_(None),
            )
            .values(consumed_at=utcnow())
        )
        return result.rowcount

    async def purge_consumed_parts(self, consumed_before: datetime) -> int:
        """Delete parts consumed before `consumed_before`."""
        purgeable = select(PendingMessagePart.id).where(
            PendingMessagePart.consumed_at.is_not(None),
            PendingMessagePart.consumed_at < consumed_before,
        )
        # detach anything still pointing at a purged row
        await self.db.execute(
            update(PendingMessagePart)
            .where(PendingMessagePart.parent_id.in_(purgeable))
            .values(parent_id=None)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(
            delete(PendingMessagePart)
            .where(PendingMessagePart.id.in_(purgeable))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    # =========================================================================
    # Delivery report log
    # =========================================================================

    def log_delivery_report(self, message_sid: str, service_type: str, body: str) -> DeliveryReportLog:
        entry = DeliveryReportLog(message_sid=message_sid, service_type=service_type, body=body)
        self.db.add(entry)
        return entry
