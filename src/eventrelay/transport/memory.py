"""
In-memory transport for tests and single-process deployments.

Published messages are recorded and fanned out to every subscription.
Each subscription has its own queue and delivers concurrently up to
``prefetch`` messages; nacked or failed deliveries are re-queued until
``max_redeliveries`` is exhausted.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from eventrelay.messages.envelope import ReceivedMessage
from eventrelay.observability import SpanKindEnum, Tracer, create_tracer
from eventrelay.observability.attributes import (
    ATTR_HANDLER_TYPE,
    ATTR_MESSAGE_ID,
    ATTR_MESSAGE_TYPE,
    ATTR_MESSAGING_OPERATION,
    ATTR_MESSAGING_SYSTEM,
)
from eventrelay.transport.interface import Ack, DeliveryHandler, Transport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishedMessage:
    """A message accepted by the in-memory transport."""

    message_type: str
    payload: str
    metadata: dict[str, str]

    @property
    def message_id(self) -> str:
        return self.metadata.get("message_id", "")


@dataclass
class _Delivery:
    message: PublishedMessage
    attempt: int = 1


@dataclass
class _Subscription:
    name: str
    handler: DeliveryHandler
    queue: asyncio.Queue[_Delivery] = field(default_factory=asyncio.Queue)
    worker: asyncio.Task[None] | None = None


class InMemoryTransport(Transport):
    """
    Transport keeping everything in process memory.

    Test hooks:
        ``fail_next(error, times)`` makes the next publishes raise ``error``.
        ``published`` lists every accepted message in order.

    Args:
        max_redeliveries: Redeliveries after the first delivery before a
            message is dropped and counted as undeliverable
        prefetch: Deliveries in flight per subscription
        tracer: Optional tracer (if not provided, one will be created)
        enable_tracing: Whether to enable OpenTelemetry tracing

    Example:
        >>> transport = InMemoryTransport()
        >>> transport.subscribe(subscriber.handle, name="inventory")
        >>> await transport.start()
        >>> ...
        >>> await transport.drain()
    """

    def __init__(
        self,
        max_redeliveries: int = 10,
        prefetch: int = 10,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._max_redeliveries = max_redeliveries
        self._prefetch = prefetch
        self._subscriptions: list[_Subscription] = []
        self._failures: deque[BaseException] = deque()
        self._in_flight: set[asyncio.Task[None]] = set()
        self._running = False
        self.published: list[PublishedMessage] = []
        self._stats = {
            "published": 0,
            "delivered": 0,
            "redelivered": 0,
            "undeliverable": 0,
        }

    # -------------------------------------------------------------------------
    # Producer side
    # -------------------------------------------------------------------------

    def fail_next(self, error: BaseException, times: int = 1) -> None:
        """Make the next ``times`` publishes raise ``error``."""
        self._failures.extend([error] * times)

    async def publish(
        self,
        message_type: str,
        payload: str,
        metadata: Mapping[str, str],
    ) -> None:
        with self._tracer.span_with_kind(
            "eventrelay.transport.publish",
            SpanKindEnum.PRODUCER,
            {
                ATTR_MESSAGE_TYPE: message_type,
                ATTR_MESSAGE_ID: metadata.get("message_id", ""),
                ATTR_MESSAGING_SYSTEM: "memory",
                ATTR_MESSAGING_OPERATION: "publish",
            },
        ):
            if self._failures:
                raise self._failures.popleft()

            message = PublishedMessage(message_type, payload, dict(metadata))
            self.published.append(message)
            self._stats["published"] += 1
            for subscription in self._subscriptions:
                subscription.queue.put_nowait(_Delivery(message))

    # -------------------------------------------------------------------------
    # Consumer side
    # -------------------------------------------------------------------------

    def subscribe(self, handler: DeliveryHandler, name: str | None = None) -> None:
        subscription = _Subscription(
            name=name or getattr(handler, "__qualname__", repr(handler)),
            handler=handler,
        )
        self._subscriptions.append(subscription)
        if self._running:
            subscription.worker = asyncio.create_task(self._consume(subscription))
        logger.info(
            f"Registered subscription {subscription.name}",
            extra={"subscription": subscription.name},
        )

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for subscription in self._subscriptions:
            subscription.worker = asyncio.create_task(self._consume(subscription))
        logger.info(
            "In-memory transport started",
            extra={"subscriptions": len(self._subscriptions)},
        )

    async def drain(self, timeout: float = 10.0) -> None:
        """
        Wait until every queued delivery, redeliveries included, is finished.

        Raises:
            TimeoutError: If deliveries are still pending after ``timeout``
        """
        async with asyncio.timeout(timeout):
            for subscription in self._subscriptions:
                await subscription.queue.join()

    async def stop(self, timeout: float = 30.0) -> None:
        if not self._running:
            return
        self._running = False
        for subscription in self._subscriptions:
            if subscription.worker is not None:
                subscription.worker.cancel()
        workers = [s.worker for s in self._subscriptions if s.worker is not None]
        await asyncio.gather(*workers, return_exceptions=True)

        if self._in_flight:
            _, pending = await asyncio.wait(list(self._in_flight), timeout=timeout)
            for task in pending:
                task.cancel()
        logger.info("In-memory transport stopped", extra=dict(self._stats))

    async def _consume(self, subscription: _Subscription) -> None:
        slots = asyncio.Semaphore(self._prefetch)
        while True:
            delivery = await subscription.queue.get()
            await slots.acquire()
            task = asyncio.create_task(self._deliver(subscription, delivery, slots))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def _deliver(
        self,
        subscription: _Subscription,
        delivery: _Delivery,
        slots: asyncio.Semaphore,
    ) -> None:
        message = delivery.message
        try:
            received = ReceivedMessage.from_metadata(
                message.message_type,
                message.payload,
                message.metadata,
                delivery_attempt=delivery.attempt,
            )
            with self._tracer.span_with_kind(
                "eventrelay.transport.deliver",
                SpanKindEnum.CONSUMER,
                {
                    ATTR_MESSAGE_TYPE: message.message_type,
                    ATTR_MESSAGE_ID: message.message_id,
                    ATTR_HANDLER_TYPE: subscription.name,
                    ATTR_MESSAGING_SYSTEM: "memory",
                    ATTR_MESSAGING_OPERATION: "process",
                },
            ):
                verdict = await subscription.handler(received)
            if verdict is None or verdict == Ack.ACK:
                self._stats["delivered"] += 1
                return
            self._redeliver(subscription, delivery, reason="nack")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                f"Delivery of {message.message_type} to {subscription.name} failed: {e}",
                extra={
                    "subscription": subscription.name,
                    "message_id": message.message_id,
                    "attempt": delivery.attempt,
                    "error": str(e),
                },
            )
            self._redeliver(subscription, delivery, reason=type(e).__name__)
        finally:
            slots.release()
            subscription.queue.task_done()

    def _redeliver(self, subscription: _Subscription, delivery: _Delivery, reason: str) -> None:
        if delivery.attempt > self._max_redeliveries:
            self._stats["undeliverable"] += 1
            logger.error(
                f"Giving up on {delivery.message.message_type} for {subscription.name} "
                f"after {delivery.attempt} deliveries",
                extra={
                    "subscription": subscription.name,
                    "message_id": delivery.message.message_id,
                    "reason": reason,
                },
            )
            return
        self._stats["redelivered"] += 1
        subscription.queue.put_nowait(_Delivery(delivery.message, delivery.attempt + 1))

    def get_stats(self) -> dict[str, Any]:
        """Counters of published, delivered, redelivered and undeliverable messages."""
        return dict(self._stats)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)


__all__ = ["InMemoryTransport", "PublishedMessage"]
