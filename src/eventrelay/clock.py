"""Time source used by the relay; injectable so tests can control time."""

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


__all__ = ["Clock", "utc_now"]
