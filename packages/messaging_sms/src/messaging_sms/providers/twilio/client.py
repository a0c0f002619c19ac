"""
Twilio SMS Provider

Sends through the Messages REST API with a Messaging Service SID and
validates callbacks with the X-Twilio-Signature scheme.
"""

import base64
import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Any

import httpx

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

TWILIO_API_BASE_URL = "https://api.twilio.com/2010-04-01"


def compute_signature(auth_token: str, url: str, params: dict[str, Any]) -> str:
    """
    Twilio request signature.

    HMAC-SHA1 over the full callback URL followed by every POST parameter
    name and value, sorted by name, base64 encoded.
    """
    data = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), data.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


class TwilioProvider(SMSProvider):
    """
    Twilio provider.

    messaging_service_sid is the Twilio Messaging Service SID, account_sid
    the Twilio account SID, and the decrypted credential the auth token.
    """

    service_type = "twilio"
    display_name = "Twilio"
    signature_header = "X-Twilio-Signature"
    status_map = {
        "accepted": SendStatus.QUEUED,
        "queued": SendStatus.QUEUED,
        "scheduled": SendStatus.QUEUED,
        "sending": SendStatus.SENDING,
        "sent": SendStatus.SENT,
        "delivered": SendStatus.DELIVERED,
        "read": SendStatus.DELIVERED,
        "failed": SendStatus.ERROR,
        "undelivered": SendStatus.ERROR,
        "canceled": SendStatus.ERROR,
    }

    def __init__(
        self,
        messaging_service_sid: str,
        account_sid: str | None,
        auth_token: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        api_base_url: str = TWILIO_API_BASE_URL,
        status_callback_url: str | None = None,
    ):
        super().__init__(messaging_service_sid, account_sid, auth_token, timeout, transport)
        self.api_base_url = api_base_url.rstrip("/")
        self.status_callback_url = status_callback_url

    @classmethod
    def service_key(cls, payload: dict[str, Any]) -> str | None:
        return payload.get("MessagingServiceSid") or None

    async def send_message(self, payload: OutboundPayload) -> ProviderResponse:
        """Send a message via the Messages API."""
        url = f"{self.api_base_url}/Accounts/{self.account_sid}/Messages.json"

        data: dict[str, Any] = {
            "To": payload.to,
            "MessagingServiceSid": payload.messaging_service_sid,
            "Body": payload.body,
        }
        if payload.media_urls:
            data["MediaUrl"] = payload.media_urls
        if self.status_callback_url:
            data["StatusCallback"] = self.status_callback_url

        response = await self._make_request(
            "POST",
            url,
            data=data,
            auth=(self.account_sid or "", self.auth_token),
        )

        logger.info(
            "Sent message via Twilio",
            extra={"to": payload.to, "service_id": response.get("sid")},
        )

        return ProviderResponse(message_id=response["sid"], raw_response=response)

    def _validate(self, request: WebhookRequest) -> bool:
        if not request.signature:
            return False
        expected = compute_signature(self.auth_token, request.url, request.payload)
        is_valid = hmac.compare_digest(expected, request.signature)
        if not is_valid:
            logger.warning("Twilio webhook signature validation failed")
        return is_valid

    def validate_inbound_webhook(self, request: WebhookRequest) -> bool:
        return self._validate(request)

    def validate_delivery_report_webhook(self, request: WebhookRequest) -> bool:
        return self._validate(request)

    def parse_inbound_message(self, payload: dict[str, Any]) -> InboundMessage:
        """
        Parse an inbound message callback.

        Twilio concatenates multi-part SMS itself, so every callback is a
        whole message.
        """
        num_media = as_int(payload.get("NumMedia"), 0)
        media_urls = [
            payload[f"MediaUrl{index}"]
            for index in range(num_media)
            if payload.get(f"MediaUrl{index}")
        ]
        return InboundMessage(
            message_id=payload["MessageSid"],
            from_phone=payload.get("From", ""),
            to_phone=payload.get("To", ""),
            body=payload.get("Body", ""),
            received_at=datetime.now(timezone.utc),
            num_segments=as_int(payload.get("NumSegments"), 1),
            num_media=num_media,
            media_urls=media_urls,
            service_profile_id=self.service_key(payload),
            raw_payload=payload,
        )

    def parse_delivery_report(self, payload: dict[str, Any]) -> DeliveryReport:
        error_code = payload.get("ErrorCode")
        return self.build_report(
            message_id=payload.get("MessageSid") or payload.get("SmsSid", ""),
            provider_status=payload.get("MessageStatus") or payload.get("SmsStatus"),
            received_at=datetime.now(timezone.utc),
            error_codes=[error_code] if error_code else [],
            num_segments=as_int(payload.get("NumSegments")),
            num_media=as_int(payload.get("NumMedia")),
            service_profile_id=self.service_key(payload),
            raw_payload=payload,
        )
