"""
Idempotent consumer dispatch.

The dispatcher runs a handler inside one transaction of the consumer's
store, together with the inbox record for the message. A message the
handler type already processed hits the inbox unique key, the transaction
is rolled back and the handler is not invoked.

Example:
    >>> dispatcher = IdempotentDispatcher(
    ...     stores.database,
    ...     stores.inbox,
    ...     handler_type="inventory.reserve",
    ...     writer=OutboxWriter(stores.outbox, registry),
    ... )
    >>>
    >>> async def reserve(message: ReceivedMessage, context: HandlerContext) -> None:
    ...     order = registry.decode(message.message_type, message.payload)
    ...     await inventory.reserve(context.transaction, order.sku, order.quantity)
    ...     await context.emit("InventoryReserved", InventoryReserved(order_id=order.order_id))
    >>>
    >>> outcome = await dispatcher.dispatch(message, reserve)
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from eventrelay.clock import Clock, utc_now
from eventrelay.correlation import CorrelationContext
from eventrelay.exceptions import DuplicateInboxError, EventRelayError
from eventrelay.messages.envelope import ReceivedMessage
from eventrelay.observability import SpanKindEnum, Tracer, create_tracer
from eventrelay.observability.attributes import (
    ATTR_CORRELATION_ID,
    ATTR_DISPATCH_OUTCOME,
    ATTR_HANDLER_TYPE,
    ATTR_MESSAGE_ID,
    ATTR_MESSAGE_TYPE,
)
from eventrelay.outbox.writer import OutboxWriter
from eventrelay.repositories.inbox import InboxRecord, InboxRepository
from eventrelay.stores.interface import TransactionManager

logger = logging.getLogger(__name__)


class DispatchOutcome(Enum):
    """Result of dispatching one delivery."""

    PROCESSED = "processed"
    """The handler ran and its transaction committed."""

    DUPLICATE = "duplicate"
    """The message was already processed by this handler type."""


class _DuplicateDetected(EventRelayError):
    """Unwinds the dispatch transaction so its partial work rolls back."""


@dataclass
class HandlerContext:
    """
    What a handler gets besides the message.

    Attributes:
        transaction: Transaction the inbox record was written in; domain
            writes must use it to commit atomically with the record
        message: The message being handled
        correlation: Context for messages emitted by the handler
    """

    transaction: Any
    message: ReceivedMessage
    correlation: CorrelationContext
    _writer: OutboxWriter | None = field(default=None, repr=False)
    emitted: list[UUID] = field(default_factory=list)

    async def emit(
        self,
        message_type: str,
        payload: BaseModel | dict[str, Any] | str,
        ordering_key: str | None = None,
    ) -> UUID:
        """
        Append a chained message to the outbox in the handler's transaction.

        The new message shares the correlation id of the handled message and
        names it as its cause.

        Raises:
            RuntimeError: If the dispatcher was created without a writer
        """
        if self._writer is None:
            raise RuntimeError("Dispatcher has no OutboxWriter; emit() is unavailable")
        message_id = await self._writer.append_in_context(
            self.transaction,
            message_type,
            payload,
            self.correlation,
            ordering_key=ordering_key,
        )
        self.emitted.append(message_id)
        return message_id


MessageHandler = Callable[[ReceivedMessage, HandlerContext], Awaitable[None]]


class IdempotentDispatcher:
    """
    Runs handlers at most once per ``(message_id, handler_type)``.

    The writer, when given, must belong to the same backend as ``database``
    so chained messages join the handler's transaction.

    Args:
        database: Transaction manager of the consumer's store
        inbox: Inbox repository of the same backend
        handler_type: Name that scopes deduplication
        writer: Writer used by ``HandlerContext.emit``
        clock: Time source for ``processed_at``
        tracer: Optional tracer (if not provided, one will be created)
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        database: TransactionManager,
        inbox: InboxRepository,
        handler_type: str,
        writer: OutboxWriter | None = None,
        clock: Clock | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._database = database
        self._inbox = inbox
        self._handler_type = handler_type
        self._writer = writer
        self._clock = clock or utc_now
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._stats = {"processed": 0, "duplicates": 0, "failed": 0}

    @property
    def handler_type(self) -> str:
        return self._handler_type

    def get_stats(self) -> dict[str, int]:
        return dict(self._stats)

    async def dispatch(
        self,
        message: ReceivedMessage,
        handler: MessageHandler,
    ) -> DispatchOutcome:
        """
        Record ``message`` in the inbox and run ``handler`` atomically.

        Raises:
            Exception: Whatever the handler raised; the inbox record and
                all handler writes are rolled back so a redelivery runs
                the handler again
        """
        with self._tracer.span_with_kind(
            "eventrelay.consumer.dispatch",
            SpanKindEnum.CONSUMER,
            {
                ATTR_MESSAGE_ID: str(message.message_id),
                ATTR_MESSAGE_TYPE: message.message_type,
                ATTR_HANDLER_TYPE: self._handler_type,
                ATTR_CORRELATION_ID: str(message.correlation_id),
            },
        ) as span:
            try:
                await self._run(message, handler)
            except _DuplicateDetected:
                outcome = DispatchOutcome.DUPLICATE
            except Exception as e:
                self._stats["failed"] += 1
                logger.warning(
                    f"Handler {self._handler_type} failed on {message.message_type} "
                    f"{message.message_id}: {e}",
                    extra={
                        "message_id": str(message.message_id),
                        "message_type": message.message_type,
                        "handler_type": self._handler_type,
                        "delivery_attempt": message.delivery_attempt,
                        "error": str(e),
                    },
                )
                raise
            else:
                outcome = DispatchOutcome.PROCESSED

            if span is not None:
                span.set_attribute(ATTR_DISPATCH_OUTCOME, outcome.value)

        if outcome is DispatchOutcome.DUPLICATE:
            self._stats["duplicates"] += 1
            logger.info(
                f"Skipping duplicate {message.message_type} {message.message_id} "
                f"for {self._handler_type}",
                extra={
                    "message_id": str(message.message_id),
                    "handler_type": self._handler_type,
                    "delivery_attempt": message.delivery_attempt,
                },
            )
        else:
            self._stats["processed"] += 1
            logger.debug(
                f"Handled {message.message_type} {message.message_id} with {self._handler_type}",
                extra={
                    "message_id": str(message.message_id),
                    "handler_type": self._handler_type,
                },
            )
        return outcome

    async def _run(self, message: ReceivedMessage, handler: MessageHandler) -> None:
        record = InboxRecord(
            message_id=message.message_id,
            handler_type=self._handler_type,
            processed_at=self._clock(),
            correlation_id=message.correlation_id,
            causation_id=message.causation_id,
        )
        async with self._database.transaction() as txn:
            try:
                await self._inbox.insert(txn, record)
            except DuplicateInboxError as e:
                raise _DuplicateDetected(str(e)) from e

            context = HandlerContext(
                transaction=txn,
                message=message,
                correlation=CorrelationContext.for_message(message),
                _writer=self._writer,
            )
            await handler(message, context)


__all__ = [
    "DispatchOutcome",
    "HandlerContext",
    "IdempotentDispatcher",
    "MessageHandler",
]
