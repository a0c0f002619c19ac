"""
Conversation Matching

Finds the conversation (campaign contact + assignment) an inbound
message belongs to. Inbound texts that match nothing are unroutable.
"""

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from messaging_sms.persistence.repo import MessagingRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversationMatch:
    campaign_contact_id: int
    assignment_id: int | None


class ConversationMatcher:
    """
    Matches inbound messages to conversations.

    With a service profile id: the contact's binding to that service gives
    the organization, and the latest outbound message to the number in a
    live campaign of that organization gives the conversation.
    Without one (fake service): the last outbound message through the
    provider to that number.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = MessagingRepository(db)

    async def match(
        self,
        service: str,
        contact_number: str,
        messaging_service_sid: str | None,
    ) -> ConversationMatch | None:
        if not messaging_service_sid:
            found = await self.repo.find_last_message_conversation(service, contact_number)
            return ConversationMatch(*found) if found else None

        organization_id = await self._resolve_organization(contact_number, messaging_service_sid)
        if organization_id is None:
            logger.warning(
                "No organization for inbound service profile",
                extra={"service": service, "messaging_service_sid": messaging_service_sid},
            )
            return None

        found = await self.repo.find_latest_conversation(organization_id, contact_number)
        return ConversationMatch(*found) if found else None

    async def _resolve_organization(
        self,
        contact_number: str,
        messaging_service_sid: str,
    ) -> int | None:
        stick = await self.repo.get_stick_for_service(contact_number, messaging_service_sid)
        if stick is not None:
            return stick.organization_id
        # no binding yet (e.g. first contact came from elsewhere): fall back to the service's org
        service = await self.repo.get_service(messaging_service_sid)
        return service.organization_id if service else None
