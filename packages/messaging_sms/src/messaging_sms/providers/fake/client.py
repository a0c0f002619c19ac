"""
Fake SMS Provider

For development and tests: nothing leaves the process. Sends always
succeed, callbacks are always authentic, and the payload shapes are the
canonical ones.
"""

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from messaging_sms.persistence.models import SendStatus
from messaging_sms.providers.base import (
    DeliveryReport,
    InboundMessage,
    OutboundPayload,
    ProviderResponse,
    SMSProvider,
    WebhookRequest,
    as_int,
)

logger = logging.getLogger(__name__)


class FakeServiceProvider(SMSProvider):
    """
    Fake provider.

    Inbound payload: {service_id, contact_number, user_number, text,
    num_media?, messaging_service_sid?}. Delivery report payload:
    {service_id, status, error_codes?, num_segments?, num_media?}.
    """

    service_type = "fakeservice"
    display_name = "Fake service"
    status_map = {status.value: status for status in SendStatus}

    def __init__(
        self,
        messaging_service_sid: str = "fakeservice",
        account_sid: str | None = None,
        auth_token: str = "",
        **kwargs: Any,
    ):
        super().__init__(messaging_service_sid, account_sid, auth_token, **kwargs)
        self.sent: list[OutboundPayload] = []

    @classmethod
    def service_key(cls, payload: dict[str, Any]) -> str | None:
        return payload.get("messaging_service_sid") or None

    async def send_message(self, payload: OutboundPayload) -> ProviderResponse:
        """Accept the message without sending it anywhere."""
        self.sent.append(payload)
        service_id = f"fakemessage{uuid4().hex}"
        logger.info(
            "Fake send",
            extra={"to": payload.to, "service_id": service_id},
        )
        return ProviderResponse(
            message_id=service_id,
            raw_response={"id": service_id, "to": payload.to, "body": payload.body},
        )

    def validate_inbound_webhook(self, request: WebhookRequest) -> bool:
        return True

    def validate_delivery_report_webhook(self, request: WebhookRequest) -> bool:
        return True

    def parse_inbound_message(self, payload: dict[str, Any]) -> InboundMessage:
        return InboundMessage(
            message_id=payload.get("service_id") or f"fakeservice_{uuid4().hex}",
            from_phone=payload.get("contact_number", ""),
            to_phone=payload.get("user_number", ""),
            body=payload.get("text", ""),
            received_at=datetime.now(timezone.utc),
            num_segments=as_int(payload.get("num_segments"), 1),
            num_media=as_int(payload.get("num_media"), 0),
            media_urls=list(payload.get("media_urls") or []),
            service_profile_id=self.service_key(payload),
            raw_payload=payload,
        )

    def parse_delivery_report(self, payload: dict[str, Any]) -> DeliveryReport:
        return self.build_report(
            message_id=payload.get("service_id", ""),
            provider_status=payload.get("status"),
            received_at=datetime.now(timezone.utc),
            error_codes=list(payload.get("error_codes") or []),
            num_segments=as_int(payload.get("num_segments")),
            num_media=as_int(payload.get("num_media")),
            service_profile_id=self.service_key(payload),
            raw_payload=payload,
        )
