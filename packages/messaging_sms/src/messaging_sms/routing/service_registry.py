"""
Messaging Service Registry

Resolves which messaging service handles a contact (outbound) or a
provider callback (inbound), and owns number sticking: once a contact
number has been texted through a service, every later message to or
from that number in the same organization uses the same service.
"""

import logging
import random

from sqlalchemy.ext.asyncio import AsyncSession

from messaging_sms.errors import NotFoundError
from messaging_sms.persistence.models import MessagingService
from messaging_sms.persistence.repo import MessagingRepository
from messaging_sms.routing.cache import ServiceCache

logger = logging.getLogger(__name__)


class MessagingServiceRegistry:
    """
    Looks up messaging services and creates contact bindings.

    The optional cache only speeds up lookups by id; bindings are always
    read from the database.
    """

    def __init__(
        self,
        db: AsyncSession,
        cache: ServiceCache | None = None,
        chooser=random.choice,
    ):
        self.db = db
        self.repo = MessagingRepository(db)
        self.cache = cache
        self._choose = chooser

    async def get_contact_messaging_service(
        self,
        campaign_contact_id: int,
        organization_id: int,
    ) -> MessagingService:
        """
        Get (binding first if needed) the messaging service for a contact.

        The binding is created with insert-on-conflict-do-nothing and then
        read back, so concurrent first sends to one number agree on a
        single service.

        Raises:
            NotFoundError: unknown contact, or no active service for the organization
        """
        found = await self.repo.get_campaign_contact_with_org(campaign_contact_id)
        if found is None:
            raise NotFoundError(f"Campaign contact {campaign_contact_id} does not exist")
        contact, _campaign_org_id = found
        cell = contact.cell

        stick = await self.repo.get_stick(cell, organization_id)
        if stick is None:
            services = await self.repo.list_active_services(organization_id)
            if not services:
                raise NotFoundError(
                    f"Organization {organization_id} has no active messaging service"
                )
            candidate = self._choose(services)
            created = await self.repo.insert_stick_if_absent(
                cell, organization_id, candidate.messaging_service_sid
            )
            await self.db.commit()

            stick = await self.repo.get_stick(cell, organization_id)
            if stick is None:
                raise NotFoundError(f"Service binding for {cell} disappeared after insert")

            if created:
                logger.info(
                    "Created messaging service stick",
                    extra={
                        "organization_id": organization_id,
                        "messaging_service_sid": stick.messaging_service_sid,
                    },
                )

        service = await self.repo.get_service(stick.messaging_service_sid)
        if service is None:
            raise NotFoundError(
                f"Messaging service {stick.messaging_service_sid} bound to contact no longer exists"
            )
        return service

    async def get_messaging_service_by_id(self, messaging_service_sid: str) -> MessagingService:
        """
        Get a messaging service by the id providers embed in callbacks.

        Raises:
            NotFoundError: if unknown
        """
        if self.cache is not None:
            cached = await self.cache.get(messaging_service_sid)
            if cached is not None:
                return cached

        service = await self.repo.get_service(messaging_service_sid)
        if service is None:
            raise NotFoundError(f"Messaging service {messaging_service_sid} does not exist")

        if self.cache is not None:
            await self.cache.set(service)
        return service
