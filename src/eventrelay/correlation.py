"""
Correlation and causation tracking.

Every message carries the correlation id of the chain it belongs to and
the id of the message whose handling produced it. The context is passed
explicitly: the writer takes it as an argument and the dispatcher hands
the child context to the handler.

Example:
    >>> ctx = CorrelationContext.new()            # originating HTTP request
    >>> await writer.append_in_context(txn, "OrderPlaced", payload, ctx)
    >>>
    >>> # in a consumer handling ``message``
    >>> child = CorrelationContext.for_message(message)
    >>> child.correlation_id == message.correlation_id
    True
    >>> child.causation_id == message.message_id
    True
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

if TYPE_CHECKING:
    from eventrelay.messages.envelope import ReceivedMessage


@dataclass(frozen=True)
class CorrelationContext:
    """
    Correlation and causation ids for messages about to be written.

    Attributes:
        correlation_id: Shared by every message of a causal chain
        causation_id: Id of the immediate parent message, None for the
            originating trigger
    """

    correlation_id: UUID
    causation_id: UUID | None = None

    @classmethod
    def new(cls, correlation_id: UUID | None = None) -> CorrelationContext:
        """Start a chain, optionally reusing an id received from upstream."""
        return cls(correlation_id=correlation_id or uuid4())

    @classmethod
    def for_message(cls, message: ReceivedMessage) -> CorrelationContext:
        """Context for messages emitted while handling ``message``."""
        return cls(
            correlation_id=message.correlation_id,
            causation_id=message.message_id,
        )


__all__ = ["CorrelationContext"]
