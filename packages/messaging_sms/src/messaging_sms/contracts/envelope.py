"""
Messaging Event Envelope

Wrapper for the events carried on the messaging streams. Redis stream
entries are flat string maps, so payload and metadata travel as JSON.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from messaging_sms.contracts.event_types import MessagingEventType

# fields stored as JSON strings inside a stream entry
JSON_FIELDS = ("payload", "metadata")


@dataclass
class MessagingEnvelope:
    """
    One event on a messaging stream.

    Attributes:
        event_id: Unique per published event (not per stream delivery)
        event_type: MessagingEventType value
        occurred_at: Publication time (UTC)
        payload: Event data; inbound part events carry only ids
        version: Event contract version
        correlation_id: Provider message id, when the event has one
        metadata: Delivery details filled in by the consumer (stream_msg_id)
    """

    event_id: UUID
    event_type: str
    occurred_at: datetime
    payload: dict[str, Any]
    version: int = 1
    correlation_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        event_type: str,
        payload: dict[str, Any],
        correlation_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> "MessagingEnvelope":
        return cls(
            event_id=uuid4(),
            event_type=event_type,
            occurred_at=datetime.now(timezone.utc),
            payload=payload,
            correlation_id=correlation_id,
            metadata=metadata or {},
        )

    @classmethod
    def inbound_part_stored(
        cls,
        part_id: int,
        service: str,
        correlation_id: str | None = None,
    ) -> "MessagingEnvelope":
        """A pending message part is in the table and ready for reassembly."""
        return cls.create(
            MessagingEventType.INBOUND_PART_STORED.value,
            {"part_id": part_id, "service": service},
            correlation_id=correlation_id,
        )

    @classmethod
    def dlq_entry(
        cls,
        original: "MessagingEnvelope",
        error: str,
        delivery_count: int,
    ) -> "MessagingEnvelope":
        """Park `original` with the reason it was given up on."""
        return cls.create(
            MessagingEventType.DLQ_ENTRY.value,
            {
                "original_event": original.to_dict(),
                "error": error,
                "delivery_count": delivery_count,
            },
            correlation_id=original.correlation_id,
        )

    @property
    def part_id(self) -> int:
        """Part id of an inbound part event. Raises KeyError/ValueError otherwise."""
        return int(self.payload["part_id"])

    @classmethod
    def from_stream_message(cls, msg_id: str, data: dict[str, str]) -> "MessagingEnvelope":
        """
        Parse a stream entry.

        Raises:
            KeyError: event_id or event_type missing
            ValueError: malformed id, timestamp or JSON field
        """
        decoded = {name: json.loads(data.get(name) or "{}") for name in JSON_FIELDS}
        decoded["metadata"]["stream_msg_id"] = msg_id

        occurred_at = data.get("occurred_at")
        return cls(
            event_id=UUID(data["event_id"]),
            event_type=data["event_type"],
            occurred_at=datetime.fromisoformat(occurred_at) if occurred_at else datetime.now(timezone.utc),
            payload=decoded["payload"],
            version=int(data.get("version") or 1),
            correlation_id=data.get("correlation_id") or None,
            metadata=decoded["metadata"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type,
            "occurred_at": self.occurred_at.isoformat(),
            "version": self.version,
            "payload": self.payload,
            "correlation_id": self.correlation_id,
            "metadata": self.metadata,
        }

    def to_stream_data(self) -> dict[str, str]:
        """Flat string map for XADD (None becomes an empty string)."""
        data = self.to_dict()
        for name in JSON_FIELDS:
            data[name] = json.dumps(data[name])
        return {key: "" if value is None else str(value) for key, value in data.items()}
