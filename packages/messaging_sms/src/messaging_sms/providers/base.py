"""
SMS Provider Base

Abstract interface every SMS/MMS provider implements.
Implementations: Twilio, Nexmo, Assemble Numbers, fake service.

A provider instance is bound to one messaging service and holds its
decrypted credential for the duration of one request.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar
from urllib.parse import parse_qsl

import httpx

from messaging_sms.persistence.models import SendStatus

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Request-level error from an SMS provider (auth, payload, network)."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.details = details or {}
        self.retryable = retryable


@dataclass
class OutboundPayload:
    """What the send pipeline hands to a provider."""

    message_id: int
    to: str
    body: str
    messaging_service_sid: str
    media_urls: list[str] | None = None
    user_number: str | None = None
    contact_zip_code: str | None = None


@dataclass
class ProviderResponse:
    """
    Response from provider after accepting a message.
    """

    message_id: str
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookRequest:
    """The parts of an HTTP callback a signature check may need."""

    url: str
    headers: dict[str, str]
    body: bytes
    payload: dict[str, Any]
    signature: str | None = None


@dataclass
class InboundMessage:
    """
    Parsed inbound message from a webhook.

    Provider-agnostic representation of an incoming SMS/MMS or of one
    part of a concatenated SMS (part_total > 1).
    """

    message_id: str
    from_phone: str
    to_phone: str
    body: str
    received_at: datetime
    num_segments: int = 1
    num_media: int = 0
    media_urls: list[str] = field(default_factory=list)
    service_profile_id: str | None = None
    part_ref: str | None = None  # shared by all parts of one concatenated message
    part_number: int = 1
    part_total: int = 1
    raw_payload: dict[str, Any] = field(default_factory=dict)

    @property
    def is_multipart(self) -> bool:
        return self.part_total > 1


@dataclass
class DeliveryReport:
    """
    Parsed delivery report from a webhook.
    """

    message_id: str
    status: SendStatus
    provider_status: str
    received_at: datetime
    error_codes: list[str] = field(default_factory=list)
    num_segments: int | None = None
    num_media: int | None = None
    service_profile_id: str | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict)


def as_int(value: Any, default: int | None = None) -> int | None:
    """Coerce a provider count field (often a string) to int."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class SMSProvider(ABC):
    """
    Abstract interface for SMS providers.

    Implementations must handle:
    - Sending one message
    - Inbound and delivery report webhook signature validation
    - Inbound and delivery report payload parsing
    - Mapping the provider's status vocabulary onto SendStatus
    """

    service_type: ClassVar[str]
    display_name: ClassVar[str]
    signature_header: ClassVar[str | None] = None
    signature_param: ClassVar[str | None] = None
    status_map: ClassVar[dict[str, SendStatus]] = {}

    def __init__(
        self,
        messaging_service_sid: str,
        account_sid: str | None,
        auth_token: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.messaging_service_sid = messaging_service_sid
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    # =========================================================================
    # Wire helpers (used by the webhook boundary before a service is known)
    # =========================================================================

    @classmethod
    def decode_payload(cls, body: bytes, content_type: str | None) -> dict[str, Any]:
        """Decode a callback body (JSON or form-encoded)."""
        if content_type and "application/x-www-form-urlencoded" in content_type:
            return dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
        if not body:
            return {}
        payload = json.loads(body)
        if not isinstance(payload, dict):
            raise ValueError("Webhook payload must be a JSON object")
        return payload

    @classmethod
    def extract_signature(cls, headers: dict[str, str], payload: dict[str, Any]) -> str | None:
        """
        The signature carried by a callback, or None when it is missing.

        Header names are matched case-insensitively.
        """
        if cls.signature_header is not None:
            return headers.get(cls.signature_header.lower()) or None
        if cls.signature_param is not None:
            return payload.get(cls.signature_param) or None
        return None

    @classmethod
    @abstractmethod
    def service_key(cls, payload: dict[str, Any]) -> str | None:
        """The messaging service id the provider embeds in its callbacks."""
        ...

    @classmethod
    def requires_signature(cls) -> bool:
        return cls.signature_header is not None or cls.signature_param is not None

    @classmethod
    def signature_location(cls) -> str:
        """Human-readable name of where the signature travels."""
        if cls.signature_header is not None:
            return f"{cls.signature_header.lower()} header"
        return f"{cls.signature_param} parameter"

    # =========================================================================
    # Capability set
    # =========================================================================

    @abstractmethod
    async def send_message(self, payload: OutboundPayload) -> ProviderResponse:
        """
        Submit one message.

        Delivery failures are reported later through delivery reports; this
        only raises ProviderError for request-level failures.

        Returns:
            ProviderResponse with the provider message id
        """
        ...

    @abstractmethod
    def validate_inbound_webhook(self, request: WebhookRequest) -> bool:
        """True if an inbound message callback is authentic. Never raises."""
        ...

    @abstractmethod
    def validate_delivery_report_webhook(self, request: WebhookRequest) -> bool:
        """True if a delivery report callback is authentic. Never raises."""
        ...

    @abstractmethod
    def parse_inbound_message(self, payload: dict[str, Any]) -> InboundMessage:
        """Map an inbound callback onto InboundMessage."""
        ...

    @abstractmethod
    def parse_delivery_report(self, payload: dict[str, Any]) -> DeliveryReport:
        """Map a delivery report callback onto DeliveryReport."""
        ...

    def map_delivery_status(self, provider_status: str | None) -> SendStatus:
        """
        Map a provider status onto SendStatus.

        Total: anything not in status_map is an error.
        """
        if provider_status is None:
            return SendStatus.ERROR
        return self.status_map.get(str(provider_status).strip().lower(), SendStatus.ERROR)

    def build_report(
        self,
        message_id: str,
        provider_status: str | None,
        received_at: datetime,
        error_codes: list[str] | None = None,
        **kwargs: Any,
    ) -> DeliveryReport:
        """Build a DeliveryReport, keeping an unmapped status in error_codes."""
        codes = [str(code) for code in (error_codes or []) if code not in (None, "")]
        status = self.map_delivery_status(provider_status)
        raw_status = str(provider_status or "")
        if raw_status.strip().lower() not in self.status_map and raw_status not in codes:
            logger.warning(
                f"Unmapped {self.display_name} status treated as error",
                extra={"provider_status": raw_status, "service_id": message_id},
            )
            codes.append(raw_status)
        return DeliveryReport(
            message_id=message_id,
            status=status,
            provider_status=raw_status,
            received_at=received_at,
            error_codes=codes,
            **kwargs,
        )

    # =========================================================================
    # HTTP plumbing
    # =========================================================================

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _make_request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        """
        Make an API request and return the decoded JSON body.

        Raises:
            ProviderError: on transport errors or HTTP status >= 400
        """
        client = await self._get_client()

        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderError(
                message=f"{self.display_name} request timed out: {e}",
                code="TIMEOUT",
                retryable=True,
            ) from e
        except httpx.RequestError as e:
            logger.error(f"HTTP request failed: {e}")
            raise ProviderError(
                message=f"HTTP request failed: {e}",
                code="HTTP_ERROR",
                retryable=True,
            ) from e

        try:
            response_data = response.json()
        except ValueError:
            response_data = {"body": response.text}
        if not isinstance(response_data, dict):
            response_data = {"body": response_data}

        if response.status_code >= 400:
            raise ProviderError(
                message=str(
                    response_data.get("message")
                    or response_data.get("error")
                    or f"{self.display_name} returned HTTP {response.status_code}"
                ),
                code=str(response_data.get("code", response.status_code)),
                details=response_data,
                retryable=response.status_code >= 500,
            )

        return response_data
