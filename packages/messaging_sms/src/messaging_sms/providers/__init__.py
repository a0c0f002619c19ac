"""
SMS Providers

Provider implementations behind one interface, selected by service type.
"""

from messaging_sms.providers.base import (
    DeliveryReport,
    InboundMessage,
    OutboundPayload,
    ProviderError,
    ProviderResponse,
    SMSProvider,
    WebhookRequest,
)
from messaging_sms.providers.registry import (
    PROVIDER_TYPES,
    build_provider,
    build_unbound_provider,
    get_provider_class,
)

__all__ = [
    "DeliveryReport",
    "InboundMessage",
    "OutboundPayload",
    "PROVIDER_TYPES",
    "ProviderError",
    "ProviderResponse",
    "SMSProvider",
    "WebhookRequest",
    "build_provider",
    "build_unbound_provider",
    "get_provider_class",
]
