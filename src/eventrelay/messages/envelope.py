"""
Message envelope seen by consumers.

The processor publishes the stored payload together with a metadata
mapping. Transports turn that pair back into a ``ReceivedMessage`` on the
consumer side.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

if TYPE_CHECKING:
    from eventrelay.repositories.outbox import OutboxMessage

META_MESSAGE_ID = "message_id"
META_CORRELATION_ID = "correlation_id"
META_CAUSATION_ID = "causation_id"
META_ORDERING_KEY = "ordering_key"
META_CREATED_AT = "created_at"
META_ATTEMPT = "attempt"


def build_metadata(message: OutboxMessage) -> dict[str, str]:
    """Metadata sent alongside a payload; every value is a string."""
    metadata = {
        META_MESSAGE_ID: str(message.id),
        META_CORRELATION_ID: str(message.correlation_id),
        META_CREATED_AT: message.created_at.isoformat(),
        META_ATTEMPT: str(message.attempts),
    }
    if message.causation_id is not None:
        metadata[META_CAUSATION_ID] = str(message.causation_id)
    if message.ordering_key is not None:
        metadata[META_ORDERING_KEY] = message.ordering_key
    return metadata


@dataclass(frozen=True)
class ReceivedMessage:
    """
    A message as delivered to a consumer.

    Attributes:
        message_id: Outbox id of the message, the idempotency key
        message_type: Type tag used to route and decode the payload
        payload: Serialized JSON body
        correlation_id: Identifier of the causal chain
        causation_id: Id of the message whose handling produced this one
        ordering_key: Key whose messages are handled one at a time
        created_at: When the message was appended to the outbox
        delivery_attempt: 1 for the first delivery, higher for redeliveries
    """

    message_id: UUID
    message_type: str
    payload: str
    correlation_id: UUID
    causation_id: UUID | None = None
    ordering_key: str | None = None
    created_at: datetime | None = None
    delivery_attempt: int = 1

    @classmethod
    def from_metadata(
        cls,
        message_type: str,
        payload: str,
        metadata: dict[str, str],
        delivery_attempt: int = 1,
    ) -> ReceivedMessage:
        causation = metadata.get(META_CAUSATION_ID)
        created_at = metadata.get(META_CREATED_AT)
        return cls(
            message_id=UUID(metadata[META_MESSAGE_ID]),
            message_type=message_type,
            payload=payload,
            correlation_id=UUID(metadata[META_CORRELATION_ID]),
            causation_id=UUID(causation) if causation else None,
            ordering_key=metadata.get(META_ORDERING_KEY),
            created_at=datetime.fromisoformat(created_at) if created_at else None,
            delivery_attempt=delivery_attempt,
        )


__all__ = [
    "ReceivedMessage",
    "build_metadata",
    "META_MESSAGE_ID",
    "META_CORRELATION_ID",
    "META_CAUSATION_ID",
    "META_ORDERING_KEY",
    "META_CREATED_AT",
    "META_ATTEMPT",
]
