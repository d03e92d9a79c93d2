"""
Message transports.

The broker wire protocol is outside this package; ``InMemoryTransport``
implements the interface for tests and single-process setups.
"""

from eventrelay.transport.interface import Ack, DeliveryHandler, Transport
from eventrelay.transport.memory import InMemoryTransport, PublishedMessage

__all__ = [
    "Ack",
    "DeliveryHandler",
    "Transport",
    "InMemoryTransport",
    "PublishedMessage",
]
