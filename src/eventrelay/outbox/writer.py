"""
Outbox writer: appends messages inside the caller's business transaction.

The writer never talks to the transport. It inserts one Pending row in the
transaction it is given, so the message exists if and only if the business
change commits.

Example:
    >>> writer = OutboxWriter(stores.outbox)
    >>> async with stores.database.transaction() as txn:
    ...     await orders.save(txn, order)
    ...     message_id = await writer.append(
    ...         txn,
    ...         "OrderPlaced",
    ...         OrderPlaced(order_id=order.id, amount=order.total),
    ...         correlation_id=request_correlation_id,
    ...     )
"""

import logging
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel

from eventrelay.clock import Clock, utc_now
from eventrelay.correlation import CorrelationContext
from eventrelay.messages.registry import MessageRegistry, default_registry
from eventrelay.observability import Tracer, create_tracer
from eventrelay.observability.attributes import (
    ATTR_CORRELATION_ID,
    ATTR_MESSAGE_ID,
    ATTR_MESSAGE_TYPE,
)
from eventrelay.repositories.outbox import OutboxMessage, OutboxRepository

logger = logging.getLogger(__name__)


class OutboxWriter:
    """
    Appends messages to the outbox within an existing transaction.

    Args:
        outbox: Repository of the backend the transactions belong to
        registry: Registry used to serialize payloads
        clock: Time source for ``created_at``
        tracer: Optional tracer (if not provided, one will be created)
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        outbox: OutboxRepository,
        registry: MessageRegistry | None = None,
        clock: Clock | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._outbox = outbox
        self._registry = registry or default_registry
        self._clock = clock or utc_now
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    async def append(
        self,
        transaction: Any,
        message_type: str,
        payload: BaseModel | dict[str, Any] | str,
        correlation_id: UUID | None = None,
        causation_id: UUID | None = None,
        ordering_key: str | None = None,
    ) -> UUID:
        """
        Insert one Pending message in ``transaction``.

        A missing ``correlation_id`` starts a new chain.

        Args:
            transaction: Transaction object of the outbox backend
            message_type: Type tag of the message
            payload: Model, JSON-serializable mapping or JSON string
            correlation_id: Chain the message belongs to
            causation_id: Message whose handling produced this one
            ordering_key: Key consumers serialize handling on

        Returns:
            The new message id

        Raises:
            SerializationError: If the payload cannot be serialized;
                nothing is written
        """
        body = self._registry.encode(message_type, payload)
        message = OutboxMessage.new(
            message_type=message_type,
            payload=body,
            correlation_id=correlation_id or uuid4(),
            created_at=self._clock(),
            causation_id=causation_id,
            ordering_key=ordering_key,
        )

        with self._tracer.span(
            "eventrelay.outbox.append",
            {
                ATTR_MESSAGE_ID: str(message.id),
                ATTR_MESSAGE_TYPE: message_type,
                ATTR_CORRELATION_ID: str(message.correlation_id),
            },
        ):
            await self._outbox.insert(transaction, message)

        logger.debug(
            f"Appended {message_type} {message.id} to outbox",
            extra={
                "message_id": str(message.id),
                "message_type": message_type,
                "correlation_id": str(message.correlation_id),
                "causation_id": str(causation_id) if causation_id else None,
            },
        )
        return message.id

    async def append_in_context(
        self,
        transaction: Any,
        message_type: str,
        payload: BaseModel | dict[str, Any] | str,
        context: CorrelationContext,
        ordering_key: str | None = None,
    ) -> UUID:
        """Append a message carrying the ids of ``context``."""
        return await self.append(
            transaction,
            message_type,
            payload,
            correlation_id=context.correlation_id,
            causation_id=context.causation_id,
            ordering_key=ordering_key,
        )


__all__ = ["OutboxWriter"]
