"""
Provider Registry

Selects the provider implementation for a messaging service by its
service_type string and builds an instance holding the decrypted
credential.
"""

import logging

import httpx

from basecore.crypto import CredentialError, CredentialVault, get_vault
from basecore.settings import Settings, get_settings

from messaging_sms.errors import ConfigurationError, NotFoundError
from messaging_sms.persistence.models import MessagingService
from messaging_sms.providers.assemble_numbers import AssembleNumbersProvider
from messaging_sms.providers.base import SMSProvider
from messaging_sms.providers.fake import FakeServiceProvider
from messaging_sms.providers.nexmo import NexmoProvider
from messaging_sms.providers.twilio import TwilioProvider

logger = logging.getLogger(__name__)

PROVIDER_TYPES: dict[str, type[SMSProvider]] = {
    TwilioProvider.service_type: TwilioProvider,
    NexmoProvider.service_type: NexmoProvider,
    AssembleNumbersProvider.service_type: AssembleNumbersProvider,
    FakeServiceProvider.service_type: FakeServiceProvider,
}


def get_provider_class(service_type: str) -> type[SMSProvider]:
    """
    Get the provider class for a service type.

    Raises:
        NotFoundError: if no provider is registered under that name
    """
    try:
        return PROVIDER_TYPES[service_type]
    except KeyError:
        raise NotFoundError(f"Unknown messaging service type: {service_type}") from None


def _provider_options(service_type: str, settings: Settings) -> dict:
    callback_url = f"{settings.PUBLIC_BASE_URL.rstrip('/')}/webhooks/{service_type}/report"
    if service_type == TwilioProvider.service_type:
        return {"api_base_url": settings.TWILIO_API_BASE_URL, "status_callback_url": callback_url}
    if service_type == NexmoProvider.service_type:
        return {"api_base_url": settings.NEXMO_API_BASE_URL, "status_callback_url": callback_url}
    return {}


def build_provider(
    service: MessagingService,
    vault: CredentialVault | None = None,
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> SMSProvider:
    """
    Build a provider bound to one messaging service.

    Args:
        service: Messaging service row
        vault: Credential vault (defaults to the process-wide one)
        settings: Settings (defaults to get_settings())
        transport: Optional httpx transport for the provider's HTTP client

    Raises:
        NotFoundError: unknown service_type
        ConfigurationError: credential missing or undecryptable
    """
    settings = settings or get_settings()
    provider_cls = get_provider_class(service.service_type)

    auth_token = ""
    if service.encrypted_auth_token:
        try:
            auth_token = (vault or get_vault()).decrypt(service.encrypted_auth_token)
        except CredentialError as e:
            raise ConfigurationError(
                f"Credential for messaging service {service.messaging_service_sid} is unusable: {e}"
            ) from e
    elif provider_cls.requires_signature():
        raise ConfigurationError(
            f"Messaging service {service.messaging_service_sid} has no credential configured"
        )

    return provider_cls(
        service.messaging_service_sid,
        service.account_sid,
        auth_token,
        timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        transport=transport,
        **_provider_options(service.service_type, settings),
    )


def build_unbound_provider(service_type: str, settings: Settings | None = None) -> SMSProvider:
    """
    Build a provider that needs no messaging service (fake service only).

    Raises:
        ConfigurationError: the provider type needs a credential
    """
    settings = settings or get_settings()
    provider_cls = get_provider_class(service_type)
    if provider_cls.requires_signature():
        raise ConfigurationError(f"{provider_cls.display_name} callbacks need a messaging service")
    return provider_cls(service_type, None, "", timeout=settings.PROVIDER_TIMEOUT_SECONDS)
