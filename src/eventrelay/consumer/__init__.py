"""
Consumer side of the relay: inbox-backed idempotent dispatch.
"""

from eventrelay.consumer.dispatcher import (
    DispatchOutcome,
    HandlerContext,
    IdempotentDispatcher,
    MessageHandler,
)
from eventrelay.consumer.ordering import OrderedWorkerPool, PoolStats
from eventrelay.consumer.subscriber import MessageConsumer

__all__ = [
    "DispatchOutcome",
    "HandlerContext",
    "IdempotentDispatcher",
    "MessageHandler",
    "MessageConsumer",
    "OrderedWorkerPool",
    "PoolStats",
]
