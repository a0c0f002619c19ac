"""
Outbound Message Handler

Sends one persisted outbound message:
1. Resolves the contact's messaging service (number sticking)
2. Builds the provider payload
3. Claims the send attempt (queued/error -> sending)
4. Calls the provider with a timeout
5. Records sent (with the provider id) or error

Provider failures never escape: they end the attempt in `error`. Anything
else that interrupts a claimed attempt (a database error, cancellation)
also moves the message to `error` before it propagates.
Retrying is an explicit operator action (see service/replay.py).
"""

import asyncio
import logging
import random
from dataclasses import asdict
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from basecore.crypto import CredentialVault
from basecore.metrics import messages_send_failed_total, messages_sent_total
from basecore.settings import Settings, get_settings

from messaging_sms.errors import NotFoundError
from messaging_sms.persistence.models import Message, MessagingService, SendStatus
from messaging_sms.persistence.repo import MessagingRepository
from messaging_sms.providers.base import OutboundPayload, ProviderError, SMSProvider
from messaging_sms.providers.fake import FakeServiceProvider
from messaging_sms.providers.registry import build_provider
from messaging_sms.routing.service_registry import MessagingServiceRegistry
from messaging_sms.service.text import message_components

logger = logging.getLogger(__name__)

AUTO_REPLY_PREFIX = "[Auto Reply]: "

ProviderFactory = Callable[[MessagingService, CredentialVault | None, Settings], SMSProvider]


class OutboundHandler:
    """
    Handles outbound messages.

    Responsibilities:
    - Resolve provider via the registry
    - Send via provider with a bounded timeout
    - Persist the outcome with conditional updates
    """

    def __init__(
        self,
        db: AsyncSession,
        registry: MessagingServiceRegistry | None = None,
        vault: CredentialVault | None = None,
        settings: Settings | None = None,
        provider_factory: ProviderFactory | None = None,
        reply_roll: Callable[[], float] = random.random,
    ):
        self.db = db
        self.repo = MessagingRepository(db)
        self.registry = registry or MessagingServiceRegistry(db)
        self.vault = vault
        self.settings = settings or get_settings()
        self.provider_factory = provider_factory or (
            lambda service, vault, settings: build_provider(service, vault, settings)
        )
        self.reply_roll = reply_roll

    async def send_message(self, message_id: int, organization_id: int) -> dict[str, Any]:
        """
        Send a queued (or previously failed) message.

        Args:
            message_id: Message row id
            organization_id: Organization owning the message's campaign

        Returns:
            Result dict with status sent, failed or skipped

        Raises:
            NotFoundError: message/contact unknown or no messaging service
            ConfigurationError: the resolved service cannot be used
        """
        message = await self.repo.get_message(message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} does not exist")
        if message.campaign_contact_id is None:
            raise NotFoundError(f"Message {message_id} has no campaign contact")

        service = await self.registry.get_contact_messaging_service(
            message.campaign_contact_id, organization_id
        )
        provider = self.provider_factory(service, self.vault, self.settings)

        try:
            payload = await self._build_payload(message, service)

            claimed = await self.repo.claim_for_send(message_id)
            await self.db.commit()
            if not claimed:
                logger.info(
                    "Message is not sendable, skipping",
                    extra={"message_id": message_id, "send_status": message.send_status},
                )
                return {"status": "skipped", "reason": "not_sendable", "message_id": message_id}

            try:
                return await self._deliver(message, provider, payload)
            except BaseException:
                await asyncio.shield(self._release_claim(message_id, provider.service_type))
                raise
        finally:
            await provider.close()

    async def _build_payload(self, message: Message, service: MessagingService) -> OutboundPayload:
        found = await self.repo.get_campaign_contact_with_org(message.campaign_contact_id)
        zip_code = found[0].zip if found else None
        body, media_url = message_components(message.text)
        return OutboundPayload(
            message_id=message.id,
            to=message.contact_number,
            body=body,
            messaging_service_sid=service.messaging_service_sid,
            media_urls=[media_url] if media_url else None,
            user_number=message.user_number or None,
            contact_zip_code=zip_code or None,
        )

    async def _deliver(
        self,
        message: Message,
        provider: SMSProvider,
        payload: OutboundPayload,
    ) -> dict[str, Any]:
        service_type = provider.service_type
        try:
            response = await asyncio.wait_for(
                provider.send_message(payload),
                timeout=self.settings.PROVIDER_TIMEOUT_SECONDS,
            )
        except (ProviderError, asyncio.TimeoutError) as e:
            return await self._record_failure(message.id, service_type, payload, e)
        except Exception as e:
            logger.error(
                f"Unexpected error from {provider.display_name} send: {e}",
                exc_info=True,
            )
            return await self._record_failure(message.id, service_type, payload, e)

        await self.repo.mark_sent(
            message.id,
            service=service_type,
            service_id=response.message_id,
            raw_response=response.raw_response,
        )
        await self.db.commit()
        messages_sent_total.labels(service=service_type).inc()

        logger.info(
            "Message sent",
            extra={
                "message_id": message.id,
                "service": service_type,
                "service_id": response.message_id,
            },
        )

        if isinstance(provider, FakeServiceProvider):
            await self._maybe_simulate_reply(message)

        return {"status": "sent", "message_id": message.id, "service_id": response.message_id}

    async def _record_failure(
        self,
        message_id: int,
        service_type: str,
        payload: OutboundPayload,
        error: Exception,
    ) -> dict[str, Any]:
        if isinstance(error, asyncio.TimeoutError):
            reason = f"timed out after {self.settings.PROVIDER_TIMEOUT_SECONDS}s"
        else:
            reason = str(error)

        logger.error(
            f"Error sending message with {service_type}: {reason}",
            extra={
                "message_id": message_id,
                "service": service_type,
                "error_code": getattr(error, "code", None),
                "message_input": asdict(payload),
            },
        )

        await self.repo.mark_send_error(message_id, service=service_type)
        await self.db.commit()
        messages_send_failed_total.labels(service=service_type).inc()
        return {"status": "failed", "message_id": message_id, "error": reason}

    async def _release_claim(self, message_id: int, service_type: str) -> None:
        """
        Move an interrupted attempt from sending to error in a new transaction.

        A message that already reached sent is left as it is.
        """
        try:
            await self.db.rollback()
            released = await self.repo.mark_send_error(message_id, service=service_type)
            await self.db.commit()
        except Exception as e:
            logger.error(
                f"Could not release send claim: {e}",
                extra={"message_id": message_id, "service": service_type},
                exc_info=True,
            )
            return

        if released:
            messages_send_failed_total.labels(service=service_type).inc()
            logger.error(
                "Send attempt interrupted, message marked as error",
                extra={"message_id": message_id, "service": service_type},
            )

    async def _maybe_simulate_reply(self, message: Message) -> None:
        """Fake service only: sometimes have the contact answer."""
        if self.reply_roll() >= self.settings.FAKE_REPLY_RATIO:
            return
        await self.repo.insert_inbound_message({
            "campaign_contact_id": message.campaign_contact_id,
            "assignment_id": message.assignment_id,
            "contact_number": message.contact_number,
            "user_number": message.user_number or "",
            "is_from_contact": True,
            "text": f"{AUTO_REPLY_PREFIX}{message.text}",
            "service": FakeServiceProvider.service_type,
            "service_id": f"fakereply{uuid4().hex}",
            "send_status": SendStatus.DELIVERED.value,
            "service_response": "[]",
        })
        await self.db.commit()
        logger.debug("Simulated fake service reply", extra={"message_id": message.id})
