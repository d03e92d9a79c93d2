"""
Shared test fixtures for eventrelay tests.

Provides message models, a registry holding them and a controllable clock.

Usage:
    from tests.fixtures import FakeClock, OrderPlaced, make_registry
"""

from tests.fixtures.clock import FakeClock
from tests.fixtures.messages import (
    InventoryReserved,
    OrderPlaced,
    PaymentCaptured,
    make_registry,
)

__all__ = [
    "FakeClock",
    "InventoryReserved",
    "OrderPlaced",
    "PaymentCaptured",
    "make_registry",
]
