"""
Assemble Numbers (Switchboard) SMS Provider

Sends through the GraphQL `sendMessage` mutation of the profile's
endpoint and validates callbacks with the X-Assemble-Signature header.
"""

import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Any

from messaging_sms.persistence.models import SendStatus
from messaging_sms.providers.base import (
    DeliveryReport,
    InboundMessage,
    OutboundPayload,
    ProviderError,
    ProviderResponse,
    SMSProvider,
    WebhookRequest,
    as_int,
)

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://numbers.assemble.live"

SEND_MESSAGE_MUTATION = """
mutation SendMessage($input: SendMessageInput!) {
  sendMessage(input: $input) {
    outboundMessage {
      id
    }
  }
}
"""


def compute_signature(api_key: str, *parts: str) -> str:
    """Hex HMAC-SHA1 of the concatenated parts, keyed by the API key."""
    data = "".join(parts)
    return hmac.new(api_key.encode("utf-8"), data.encode("utf-8"), hashlib.sha1).hexdigest()


def parse_timestamp(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return datetime.now(timezone.utc)


class AssembleNumbersProvider(SMSProvider):
    """
    Assemble Numbers provider.

    messaging_service_sid is the sending profile id, account_sid the API
    endpoint base URL, and the decrypted credential the API key.
    """

    service_type = "assemble-numbers"
    display_name = "Assemble"
    signature_header = "X-Assemble-Signature"
    status_map = {
        "queued": SendStatus.QUEUED,
        "sending": SendStatus.SENDING,
        "sent": SendStatus.SENT,
        "delivered": SendStatus.DELIVERED,
        "sending_failed": SendStatus.ERROR,
        "delivery_failed": SendStatus.ERROR,
        "delivery_unconfirmed": SendStatus.ERROR,
    }

    @classmethod
    def service_key(cls, payload: dict[str, Any]) -> str | None:
        return payload.get("profileId") or None

    @property
    def endpoint(self) -> str:
        return f"{(self.account_sid or DEFAULT_ENDPOINT).rstrip('/')}/graphql"

    async def send_message(self, payload: OutboundPayload) -> ProviderResponse:
        """Send a message via the GraphQL API."""
        message_input: dict[str, Any] = {
            "profileId": payload.messaging_service_sid,
            "to": payload.to,
            "body": payload.body,
            "mediaUrls": payload.media_urls or None,
            # blank zip codes are rejected, null is not
            "contactZipCode": payload.contact_zip_code or None,
        }

        response = await self._make_request(
            "POST",
            self.endpoint,
            json={"query": SEND_MESSAGE_MUTATION, "variables": {"input": message_input}},
            auth=(self.auth_token, ""),
        )

        errors = response.get("errors") or []
        if errors:
            raise ProviderError(
                message=errors[0].get("message", "Assemble Numbers returned an error"),
                code="GRAPHQL_ERROR",
                details=response,
            )

        try:
            service_id = response["data"]["sendMessage"]["outboundMessage"]["id"]
        except (KeyError, TypeError) as e:
            raise ProviderError(
                message="Assemble Numbers response had no outbound message id",
                code="MALFORMED_RESPONSE",
                details=response,
            ) from e

        logger.info(
            "Sent message via Assemble Numbers",
            extra={"to": payload.to, "service_id": service_id},
        )

        return ProviderResponse(message_id=service_id, raw_response=response)

    def _matches(self, signature: str | None, *parts: str) -> bool:
        if not signature:
            return False
        expected = compute_signature(self.auth_token, *parts)
        return hmac.compare_digest(expected, signature)

    def validate_inbound_webhook(self, request: WebhookRequest) -> bool:
        is_valid = self._matches(request.signature, str(request.payload.get("id", "")))
        if not is_valid:
            logger.warning("Assemble inbound webhook signature validation failed")
        return is_valid

    def validate_delivery_report_webhook(self, request: WebhookRequest) -> bool:
        message_id = str(request.payload.get("id") or request.payload.get("messageId") or "")
        is_valid = self._matches(
            request.signature,
            message_id,
            str(request.payload.get("eventType", "")),
        )
        if not is_valid:
            logger.warning("Assemble delivery report signature validation failed")
        return is_valid

    def parse_inbound_message(self, payload: dict[str, Any]) -> InboundMessage:
        return InboundMessage(
            message_id=payload["id"],
            from_phone=payload.get("from", ""),
            to_phone=payload.get("to", ""),
            body=payload.get("body") or "",
            received_at=parse_timestamp(payload.get("receivedAt")),
            num_segments=as_int(payload.get("numSegments"), 1),
            num_media=as_int(payload.get("numMedia"), 0),
            media_urls=list(payload.get("mediaUrls") or []),
            service_profile_id=self.service_key(payload),
            raw_payload=payload,
        )

    def parse_delivery_report(self, payload: dict[str, Any]) -> DeliveryReport:
        extra = payload.get("extra") or {}
        return self.build_report(
            message_id=payload.get("messageId") or payload.get("id", ""),
            provider_status=payload.get("eventType"),
            received_at=parse_timestamp(payload.get("generatedAt")),
            error_codes=list(payload.get("errorCodes") or []),
            num_segments=as_int(extra.get("num_segments")),
            num_media=as_int(extra.get("num_media")),
            service_profile_id=self.service_key(payload),
            raw_payload=payload,
        )
