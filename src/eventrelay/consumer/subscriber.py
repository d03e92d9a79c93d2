"""
Consumer wiring: routes deliveries to idempotent handlers.

``MessageConsumer`` is the delivery handler given to a transport. It looks
up the handlers registered for the message type, runs each through its own
``IdempotentDispatcher`` on the ordered worker pool, and acks the delivery
once every handler has either processed it or found it a duplicate.

Example:
    >>> consumer = MessageConsumer(stores.database, stores.inbox, registry=registry)
    >>> consumer.register("OrderPlaced", reserve_inventory, handler_type="inventory.reserve")
    >>> transport.subscribe(consumer, name="inventory")
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass

from eventrelay.clock import Clock
from eventrelay.config import DispatcherConfig
from eventrelay.consumer.dispatcher import (
    DispatchOutcome,
    IdempotentDispatcher,
    MessageHandler,
)
from eventrelay.consumer.ordering import OrderedWorkerPool
from eventrelay.exceptions import PermanentError
from eventrelay.messages.envelope import ReceivedMessage
from eventrelay.messages.registry import MessageRegistry, default_registry
from eventrelay.observability import Tracer, create_tracer
from eventrelay.outbox.writer import OutboxWriter
from eventrelay.repositories.inbox import InboxRepository
from eventrelay.stores.interface import TransactionManager
from eventrelay.transport.interface import Ack

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Route:
    handler: MessageHandler
    dispatcher: IdempotentDispatcher


class MessageConsumer:
    """
    Transport delivery handler running registered handlers idempotently.

    A delivery is acked when all handlers succeed (duplicates included)
    and nacked when any handler raises, so the transport redelivers and the
    handlers that already committed see a duplicate. Messages whose payload
    cannot be decoded are acked and logged: redelivering them cannot help.

    Args:
        database: Transaction manager of the consumer's store
        inbox: Inbox repository of the same backend
        registry: Registry used to validate payloads before dispatch
        writer: Writer for messages emitted by handlers
        config: Concurrency settings
        clock: Time source for inbox records
        tracer: Optional tracer (if not provided, one will be created)
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        database: TransactionManager,
        inbox: InboxRepository,
        registry: MessageRegistry | None = None,
        writer: OutboxWriter | None = None,
        config: DispatcherConfig | None = None,
        clock: Clock | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._database = database
        self._inbox = inbox
        self._registry = registry or default_registry
        self._writer = writer
        self._config = config or DispatcherConfig()
        self._clock = clock
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._pool = OrderedWorkerPool(self._config.max_concurrency)
        self._routes: dict[str, list[_Route]] = defaultdict(list)
        self._dispatchers: dict[str, IdempotentDispatcher] = {}

    @property
    def pool(self) -> OrderedWorkerPool:
        return self._pool

    @property
    def message_types(self) -> list[str]:
        return sorted(self._routes)

    def register(
        self,
        message_type: str,
        handler: MessageHandler,
        handler_type: str | None = None,
    ) -> IdempotentDispatcher:
        """
        Route ``message_type`` to ``handler``.

        ``handler_type`` scopes deduplication and defaults to the handler's
        qualified name. One handler type may serve several message types.
        """
        name = handler_type or f"{handler.__module__}.{handler.__qualname__}"
        dispatcher = self._dispatchers.get(name)
        if dispatcher is None:
            dispatcher = IdempotentDispatcher(
                self._database,
                self._inbox,
                name,
                writer=self._writer,
                clock=self._clock,
                tracer=self._tracer,
            )
            self._dispatchers[name] = dispatcher
        self._routes[message_type].append(_Route(handler, dispatcher))
        logger.debug(
            f"Registered handler {name} for {message_type}",
            extra={"handler_type": name, "message_type": message_type},
        )
        return dispatcher

    def handles(self, message_type: str) -> bool:
        return message_type in self._routes

    async def __call__(self, message: ReceivedMessage) -> Ack:
        task = self._pool.submit(
            message.ordering_key,
            self.handle(message),
            on_error=lambda error: self._log_delivery_error(message, error),
        )
        return await task

    async def handle(self, message: ReceivedMessage) -> Ack:
        """Dispatch ``message`` to its handlers without going through the pool."""
        routes = self._routes.get(message.message_type)
        if not routes:
            logger.debug(
                f"No handler for {message.message_type}, acking",
                extra={"message_id": str(message.message_id)},
            )
            return Ack.ACK

        try:
            self._registry.decode(message.message_type, message.payload)
        except PermanentError as e:
            logger.error(
                f"Dropping undecodable {message.message_type} {message.message_id}: {e}",
                extra={
                    "message_id": str(message.message_id),
                    "message_type": message.message_type,
                    "error": str(e),
                },
            )
            return Ack.ACK

        results = await asyncio.gather(
            *(route.dispatcher.dispatch(message, route.handler) for route in routes),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        for failure in failures:
            if isinstance(failure, asyncio.CancelledError):
                raise failure
        if failures:
            return Ack.NACK

        duplicates = sum(1 for r in results if r is DispatchOutcome.DUPLICATE)
        if duplicates:
            logger.debug(
                f"{duplicates} of {len(routes)} handler(s) already processed {message.message_id}",
                extra={"message_id": str(message.message_id)},
            )
        return Ack.ACK

    async def close(self, timeout: float | None = None) -> None:
        """
        Wait for deliveries still running on the pool.

        Raises:
            TimeoutError: If deliveries are still running after ``timeout``
        """
        await self._pool.join(timeout)

    def _log_delivery_error(self, message: ReceivedMessage, error: BaseException) -> None:
        logger.warning(
            f"Delivery of {message.message_type} {message.message_id} failed: {error}",
            extra={
                "message_id": str(message.message_id),
                "message_type": message.message_type,
                "error": str(error),
            },
        )


__all__ = ["MessageConsumer"]
