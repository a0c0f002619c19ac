"""
Messaging Database Models

Tables owned by the messaging core:
- message: every SMS/MMS in either direction
- pending_message_part: raw inbound fragments waiting for reassembly
- messaging_service: one configured provider account/profile
- messaging_service_stick: contact number -> messaging service, per organization
- log: raw delivery report audit trail

Tables read for conversation matching (owned by the campaign app):
- campaign, assignment, campaign_contact
"""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

MessagingBase = declarative_base()

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SendStatus(str, Enum):
    """Canonical send status, independent of any provider vocabulary."""

    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


# delivered and error share the top rank: neither replaces the other
STATUS_RANK = {
    SendStatus.QUEUED: 1,
    SendStatus.SENDING: 2,
    SendStatus.SENT: 3,
    SendStatus.DELIVERED: 4,
    SendStatus.ERROR: 4,
}

TERMINAL_STATUSES = frozenset({SendStatus.DELIVERED, SendStatus.ERROR})


# =============================================================================
# Campaign tables (read-only here)
# =============================================================================


class Campaign(MessagingBase):
    __tablename__ = "campaign"

    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, nullable=False, index=True)
    title = Column(String(255), nullable=False, default="")
    is_archived = Column(Boolean, nullable=False, default=False)


class Assignment(MessagingBase):
    __tablename__ = "assignment"

    id = Column(Integer, primary_key=True)
    campaign_id = Column(Integer, ForeignKey("campaign.id"), nullable=False, index=True)
    user_id = Column(Integer, nullable=True)


class CampaignContact(MessagingBase):
    __tablename__ = "campaign_contact"

    id = Column(Integer, primary_key=True)
    campaign_id = Column(Integer, ForeignKey("campaign.id"), nullable=False)
    assignment_id = Column(Integer, ForeignKey("assignment.id"), nullable=True)
    cell = Column(String(32), nullable=False)
    zip = Column(String(16), nullable=True)
    is_opted_out = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("idx_campaign_contact_campaign_cell", "campaign_id", "cell"),
        Index("idx_campaign_contact_cell", "cell"),
    )


# =============================================================================
# Messaging tables
# =============================================================================


class MessagingService(MessagingBase):
    """
    One configured provider account/profile.

    messaging_service_sid is the provider-side identifier (Twilio messaging
    service SID, Nexmo API key, Assemble profile id) and is what providers
    embed in their callbacks. The credential is stored encrypted.
    """

    __tablename__ = "messaging_service"

    messaging_service_sid = Column(String(255), primary_key=True)
    organization_id = Column(Integer, nullable=False)
    service_type = Column(String(50), nullable=False)  # twilio, nexmo, assemble-numbers, fakeservice
    account_sid = Column(String(255), nullable=True)  # account id or API endpoint
    encrypted_auth_token = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_messaging_service_org_active", "organization_id", "is_active"),
    )


class MessagingServiceStick(MessagingBase):
    """
    Binds a contact number to one messaging service within an organization.

    Created lazily on first send; the primary key makes concurrent
    first-touch inserts collapse to a single row.
    """

    __tablename__ = "messaging_service_stick"

    cell = Column(String(32), nullable=False)
    organization_id = Column(Integer, nullable=False)
    messaging_service_sid = Column(
        String(255),
        ForeignKey("messaging_service.messaging_service_sid"),
        nullable=False,
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        PrimaryKeyConstraint("cell", "organization_id", name="pk_messaging_service_stick"),
        Index("idx_messaging_service_stick_sid_cell", "messaging_service_sid", "cell"),
    )


class Message(MessagingBase):
    """
    One SMS/MMS unit in one direction.

    service_id is the provider-assigned id; (service, service_id) is unique
    once assigned, which is what makes inbound ingestion idempotent.
    service_response is a JSON list of raw provider payloads, appended to
    and never rewritten.
    """

    __tablename__ = "message"

    id = Column(Integer, primary_key=True)
    campaign_contact_id = Column(Integer, ForeignKey("campaign_contact.id"), nullable=True, index=True)
    assignment_id = Column(Integer, ForeignKey("assignment.id"), nullable=True)
    user_id = Column(Integer, nullable=True)
    contact_number = Column(String(32), nullable=False)
    user_number = Column(String(32), nullable=False, default="")
    is_from_contact = Column(Boolean, nullable=False, default=False)
    text = Column(Text, nullable=False, default="")
    media_urls = Column(JSONType, nullable=True)
    service = Column(String(50), nullable=False, default="")
    service_id = Column(String(255), nullable=True)  # NULL until a provider assigns one
    send_status = Column(String(20), nullable=False, default=SendStatus.QUEUED.value)
    service_response = Column(Text, nullable=False, default="")
    num_segments = Column(Integer, nullable=True)
    num_media = Column(Integer, nullable=True)
    error_codes = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    service_response_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("service", "service_id", name="uq_message_service_service_id"),
        Index("idx_message_contact_number_created", "contact_number", "created_at"),
        Index("idx_message_send_status", "send_status"),
    )


class PendingMessagePart(MessagingBase):
    """
    A raw inbound fragment awaiting reassembly.

    Parts of one logical message point at the first stored part through
    parent_id; the first part has parent_id NULL. Parts folded into a
    message are kept with consumed_at set until they are purged, so a
    redelivered part is recognised and dropped.
    """

    __tablename__ = "pending_message_part"

    id = Column(Integer, primary_key=True)
    service = Column(String(50), nullable=False)
    service_id = Column(String(255), nullable=False)
    parent_id = Column(Integer, ForeignKey("pending_message_part.id"), nullable=True)
    service_message = Column(Text, nullable=False)
    user_number = Column(String(32), nullable=False, default="")
    contact_number = Column(String(32), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    consumed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("service", "service_id", name="uq_pending_message_part_service_id"),
        Index("idx_pending_message_part_parent", "parent_id"),
    )


class DeliveryReportLog(MessagingBase):
    """Raw delivery report bodies, as received."""

    __tablename__ = "log"

    id = Column(Integer, primary_key=True)
    message_sid = Column(String(255), nullable=False, index=True)
    service_type = Column(String(50), nullable=False)
    body = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
