"""
Messaging Event Types

Events carried on the messaging Redis Streams.
"""

from enum import Enum


class MessagingEventType(str, Enum):
    """
    Event types for the messaging streams.

    - INBOUND_PART_STORED: a pending message part was written and is ready
      for reassembly
    - DLQ_ENTRY: an event that kept failing, parked for an operator
    """

    INBOUND_PART_STORED = "sms_inbound_part_stored"
    DLQ_ENTRY = "sms_dlq_entry"

    def __str__(self) -> str:
        return self.value
