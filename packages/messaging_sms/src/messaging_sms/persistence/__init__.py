from messaging_sms.persistence.models import (
    DeliveryReportLog,
    Message,
    MessagingBase,
    MessagingService,
    MessagingServiceStick,
    PendingMessagePart,
    SendStatus,
)
from messaging_sms.persistence.repo import MessagingRepository

__all__ = [
    "DeliveryReportLog",
    "Message",
    "MessagingBase",
    "MessagingRepository",
    "MessagingService",
    "MessagingServiceStick",
    "PendingMessagePart",
    "SendStatus",
]
