"""Transport interface between the outbox processor and consumers.

The processor calls ``publish``; a failing publish must raise so that the
message is retried. Consumers register a delivery handler with
``subscribe``; a handler returning ``Ack.NACK`` or raising asks the
transport to redeliver, which is what makes delivery at-least-once.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from enum import Enum

from eventrelay.messages.envelope import ReceivedMessage


class Ack(Enum):
    """Consumer verdict on a delivered message."""

    ACK = "ack"
    NACK = "nack"


DeliveryHandler = Callable[[ReceivedMessage], Awaitable[Ack | None]]
"""Async callable handling one delivery; ``None`` counts as ``Ack.ACK``."""


class Transport(ABC):
    """
    Abstract message transport.

    Implementations SHOULD trace with the composition-based ``Tracer`` from
    ``eventrelay.observability`` using the span names
    ``eventrelay.transport.publish`` and ``eventrelay.transport.deliver``.
    """

    @abstractmethod
    async def publish(
        self,
        message_type: str,
        payload: str,
        metadata: Mapping[str, str],
    ) -> None:
        """
        Hand a message to the broker.

        Args:
            message_type: Type tag used for routing
            payload: Serialized JSON body
            metadata: String metadata (message id, correlation ids, ...)

        Raises:
            Exception: Any failure; the outbox processor classifies it
        """
        pass

    @abstractmethod
    def subscribe(self, handler: DeliveryHandler, name: str | None = None) -> None:
        """
        Register a consumer.

        Every subscription receives every published message.
        """
        pass

    async def start(self) -> None:  # noqa: B027
        """Start delivering to subscribers."""
        pass

    async def stop(self, timeout: float = 30.0) -> None:  # noqa: B027
        """Stop delivering, waiting up to ``timeout`` for in-flight deliveries."""
        pass


__all__ = ["Ack", "DeliveryHandler", "Transport"]
