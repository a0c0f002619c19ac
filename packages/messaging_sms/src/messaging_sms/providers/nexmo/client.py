"""
Nexmo SMS Provider

Sends through the legacy SMS API and validates signed callbacks (`sig`
parameter, MD5 hash scheme). Long inbound SMS arrive as separate
callbacks carrying concat-ref / concat-part / concat-total.
"""

import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any

import httpx

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

NEXMO_API_BASE_URL = "https://rest.nexmo.com"


def compute_signature(signature_secret: str, params: dict[str, Any]) -> str:
    """
    Nexmo MD5 hash signature.

    Every parameter except `sig`, sorted by name, rendered as `&name=value`
    with `&` and `=` in values replaced by `_`, followed by the secret.
    """
    parts = []
    for key in sorted(params):
        if key == "sig":
            continue
        value = str(params[key]).replace("&", "_").replace("=", "_")
        parts.append(f"&{key}={value}")
    data = "".join(parts) + signature_secret
    return hashlib.md5(data.encode("utf-8")).hexdigest()


def parse_credentials(auth_token: str) -> tuple[str, str]:
    """
    Split the stored credential into (api_secret, signature_secret).

    Stored either as a JSON object with both keys or as one plain secret
    used for both.
    """
    try:
        data = json.loads(auth_token)
    except ValueError:
        return auth_token, auth_token
    if not isinstance(data, dict):
        return auth_token, auth_token
    api_secret = data.get("api_secret", "")
    return api_secret, data.get("signature_secret", api_secret)


class NexmoProvider(SMSProvider):
    """
    Nexmo provider.

    messaging_service_sid is the Nexmo API key and account_sid the sender
    number (or alphanumeric sender id).
    """

    service_type = "nexmo"
    display_name = "Nexmo"
    signature_param = "sig"
    status_map = {
        "accepted": SendStatus.SENDING,
        "buffered": SendStatus.SENDING,
        "delivered": SendStatus.DELIVERED,
        "expired": SendStatus.ERROR,
        "failed": SendStatus.ERROR,
        "rejected": SendStatus.ERROR,
    }

    def __init__(
        self,
        messaging_service_sid: str,
        account_sid: str | None,
        auth_token: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        api_base_url: str = NEXMO_API_BASE_URL,
        status_callback_url: str | None = None,
    ):
        super().__init__(messaging_service_sid, account_sid, auth_token, timeout, transport)
        self.api_base_url = api_base_url.rstrip("/")
        self.status_callback_url = status_callback_url
        self.api_secret, self.signature_secret = parse_credentials(auth_token)

    @classmethod
    def service_key(cls, payload: dict[str, Any]) -> str | None:
        return payload.get("api-key") or None

    async def send_message(self, payload: OutboundPayload) -> ProviderResponse:
        """Send a message via the SMS API."""
        url = f"{self.api_base_url}/sms/json"

        data: dict[str, Any] = {
            "api_key": self.messaging_service_sid,
            "api_secret": self.api_secret,
            "from": payload.user_number or self.account_sid or "",
            "to": payload.to,
            "text": payload.body,
            "client-ref": str(payload.message_id),
        }
        if self.status_callback_url:
            data["callback"] = self.status_callback_url

        response = await self._make_request("POST", url, json=data)

        messages = response.get("messages") or []
        if not messages:
            raise ProviderError(
                message="Nexmo response contained no messages",
                code="EMPTY_RESPONSE",
                details=response,
            )
        first = messages[0]
        if str(first.get("status", "")) != "0":
            raise ProviderError(
                message=first.get("error-text", "Nexmo rejected the message"),
                code=str(first.get("status")),
                details=response,
            )

        logger.info(
            "Sent message via Nexmo",
            extra={"to": payload.to, "service_id": first.get("message-id")},
        )

        return ProviderResponse(message_id=first["message-id"], raw_response=response)

    def _validate(self, request: WebhookRequest) -> bool:
        if not request.signature:
            return False
        expected = compute_signature(self.signature_secret, request.payload)
        is_valid = hmac.compare_digest(expected.lower(), request.signature.lower())
        if not is_valid:
            logger.warning("Nexmo webhook signature validation failed")
        return is_valid

    def validate_inbound_webhook(self, request: WebhookRequest) -> bool:
        return self._validate(request)

    def validate_delivery_report_webhook(self, request: WebhookRequest) -> bool:
        return self._validate(request)

    def parse_inbound_message(self, payload: dict[str, Any]) -> InboundMessage:
        """Parse an inbound message (or one part of a concatenated one)."""
        is_concat = str(payload.get("concat", "")).lower() == "true"
        return InboundMessage(
            message_id=payload["messageId"],
            from_phone=payload.get("msisdn", ""),
            to_phone=payload.get("to", ""),
            body=payload.get("text", ""),
            received_at=datetime.now(timezone.utc),
            num_segments=as_int(payload.get("concat-total"), 1) if is_concat else 1,
            num_media=0,
            service_profile_id=self.service_key(payload),
            part_ref=payload.get("concat-ref") if is_concat else None,
            part_number=as_int(payload.get("concat-part"), 1) if is_concat else 1,
            part_total=as_int(payload.get("concat-total"), 1) if is_concat else 1,
            raw_payload=payload,
        )

    def parse_delivery_report(self, payload: dict[str, Any]) -> DeliveryReport:
        error_code = str(payload.get("err-code", "0"))
        return self.build_report(
            message_id=payload.get("messageId", ""),
            provider_status=payload.get("status"),
            received_at=datetime.now(timezone.utc),
            error_codes=[] if error_code == "0" else [error_code],
            service_profile_id=self.service_key(payload),
            raw_payload=payload,
        )
