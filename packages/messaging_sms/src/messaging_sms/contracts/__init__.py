from messaging_sms.contracts.envelope import MessagingEnvelope
from messaging_sms.contracts.event_types import MessagingEventType

__all__ = ["MessagingEnvelope", "MessagingEventType"]
