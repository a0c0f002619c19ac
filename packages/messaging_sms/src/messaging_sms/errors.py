"""
Messaging errors

Configuration errors are raised to the caller. Provider request failures
use ProviderError (messaging_sms.providers.base) and are absorbed by the
pipelines.
"""


class MessagingError(Exception):
    """Base class for messaging core errors."""


class NotFoundError(MessagingError):
    """A messaging service (or the row needed to find one) does not exist."""


class ConfigurationError(MessagingError):
    """A messaging service exists but cannot be used as configured."""
