"""
OpenTelemetry metrics for the outbox relay.

Tracks published, retried and dead-lettered messages, processing cycles
that failed because the store was unavailable, delivery latency and
publish duration, and the pending backlog depth.

Example:
    >>> from eventrelay.observability.metrics import RelayMetrics
    >>>
    >>> metrics = RelayMetrics("orders-relay")
    >>> metrics.record_published("OrderPlaced", publish_ms=4.2, latency_ms=180.0)
    >>> metrics.record_retried("OrderPlaced", "TimeoutError")
    >>> metrics.record_backlog(12)

Metrics Exposed:
    - eventrelay.messages.published (Counter)
    - eventrelay.messages.retried (Counter)
    - eventrelay.messages.dead_lettered (Counter)
    - eventrelay.cycles.failed (Counter)
    - eventrelay.publish.duration (Histogram, ms)
    - eventrelay.delivery.latency (Histogram, ms from creation to publish)
    - eventrelay.backlog.depth (Gauge)

All metrics carry the 'relay' attribute naming the processor instance group.
"""

from __future__ import annotations

import time
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import metrics
from opentelemetry.metrics import CallbackOptions, MeterProvider, Observation


@dataclass
class MetricSnapshot:
    """
    Snapshot of the values recorded by a RelayMetrics instance.

    Mirrors what would be reported to OpenTelemetry; used by tests and by
    the ``inspect`` command.
    """

    published: int = 0
    retried: int = 0
    dead_lettered: int = 0
    failed_cycles: int = 0
    total_publish_time_ms: float = 0.0
    max_delivery_latency_ms: float = 0.0
    backlog_depth: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "published": self.published,
            "retried": self.retried,
            "dead_lettered": self.dead_lettered,
            "failed_cycles": self.failed_cycles,
            "total_publish_time_ms": self.total_publish_time_ms,
            "max_delivery_latency_ms": self.max_delivery_latency_ms,
            "backlog_depth": self.backlog_depth,
        }


@dataclass
class RelayMetrics:
    """
    Container for relay metric instruments.

    Attributes:
        relay_name: Label attached to every measurement
        enable_metrics: When False a no-op meter is used
        meter_provider: Provider to create the meter from; defaults to the
            globally configured provider
    """

    relay_name: str = "eventrelay"
    enable_metrics: bool = True
    meter_provider: MeterProvider | None = field(default=None, repr=False)

    _published_counter: Any = field(default=None, init=False, repr=False)
    _retried_counter: Any = field(default=None, init=False, repr=False)
    _dead_lettered_counter: Any = field(default=None, init=False, repr=False)
    _failed_cycles_counter: Any = field(default=None, init=False, repr=False)
    _publish_duration: Any = field(default=None, init=False, repr=False)
    _delivery_latency: Any = field(default=None, init=False, repr=False)
    _snapshot: MetricSnapshot = field(default_factory=MetricSnapshot, init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.enable_metrics:
            meter: metrics.Meter = metrics.NoOpMeter("eventrelay")
        elif self.meter_provider is not None:
            meter = self.meter_provider.get_meter("eventrelay", version="1.0.0")
        else:
            meter = metrics.get_meter("eventrelay", version="1.0.0")

        self._published_counter = meter.create_counter(
            name="eventrelay.messages.published",
            unit="messages",
            description="Messages successfully relayed to the transport",
        )
        self._retried_counter = meter.create_counter(
            name="eventrelay.messages.retried",
            unit="messages",
            description="Failed publishes rescheduled with backoff",
        )
        self._dead_lettered_counter = meter.create_counter(
            name="eventrelay.messages.dead_lettered",
            unit="messages",
            description="Messages moved to the dead-letter store",
        )
        self._failed_cycles_counter = meter.create_counter(
            name="eventrelay.cycles.failed",
            unit="cycles",
            description="Processing cycles aborted because the store was unavailable",
        )
        self._publish_duration = meter.create_histogram(
            name="eventrelay.publish.duration",
            unit="ms",
            description="Transport publish duration in milliseconds",
        )
        self._delivery_latency = meter.create_histogram(
            name="eventrelay.delivery.latency",
            unit="ms",
            description="Time from outbox append to successful publish",
        )
        meter.create_observable_gauge(
            name="eventrelay.backlog.depth",
            callbacks=[self._observe_backlog],
            unit="messages",
            description="Pending outbox messages",
        )

    def _observe_backlog(self, options: CallbackOptions) -> Iterable[Observation]:
        yield Observation(
            value=self._snapshot.backlog_depth,
            attributes={"relay": self.relay_name},
        )

    def record_published(
        self,
        message_type: str,
        publish_ms: float,
        latency_ms: float | None = None,
    ) -> None:
        """
        Record a successful publish.

        Args:
            message_type: Type tag of the message
            publish_ms: Duration of the transport call
            latency_ms: Time since the message was appended, if known
        """
        attrs = {"relay": self.relay_name, "message.type": message_type}
        self._published_counter.add(1, attrs)
        self._publish_duration.record(publish_ms, attrs)
        self._snapshot.published += 1
        self._snapshot.total_publish_time_ms += publish_ms
        if latency_ms is not None:
            self._delivery_latency.record(latency_ms, attrs)
            self._snapshot.max_delivery_latency_ms = max(
                self._snapshot.max_delivery_latency_ms, latency_ms
            )

    def record_retried(self, message_type: str, error_type: str) -> None:
        """Record a failed publish that was rescheduled."""
        self._retried_counter.add(
            1,
            {"relay": self.relay_name, "message.type": message_type, "error.type": error_type},
        )
        self._snapshot.retried += 1

    def record_dead_lettered(self, message_type: str, error_type: str) -> None:
        """Record a message moved to the dead-letter store."""
        self._dead_lettered_counter.add(
            1,
            {"relay": self.relay_name, "message.type": message_type, "error.type": error_type},
        )
        self._snapshot.dead_lettered += 1

    def record_cycle_failed(self, error_type: str) -> None:
        """Record a processing cycle aborted by a store outage."""
        self._failed_cycles_counter.add(1, {"relay": self.relay_name, "error.type": error_type})
        self._snapshot.failed_cycles += 1

    def record_backlog(self, depth: int) -> None:
        """
        Update the pending backlog depth.

        Reported by the observable gauge during metric collection.
        """
        self._snapshot.backlog_depth = max(0, depth)

    @contextmanager
    def time_publish(self) -> Generator[_Timer, None, None]:
        """
        Context manager for timing a transport publish.

        Example:
            >>> with metrics.time_publish() as timer:
            ...     await transport.publish(...)
            >>> metrics.record_published("OrderPlaced", timer.duration_ms)
        """
        timer = _Timer()
        timer.start()
        try:
            yield timer
        finally:
            timer.stop()

    def get_snapshot(self) -> MetricSnapshot:
        """Return a copy of the accumulated values."""
        return MetricSnapshot(**self._snapshot.to_dict())

    @property
    def backlog_depth(self) -> int:
        return self._snapshot.backlog_depth


class _Timer:
    """Internal timer used by the time_publish context manager."""

    def __init__(self) -> None:
        self._start: float = 0.0
        self._end: float = 0.0
        self._stopped: bool = False

    def start(self) -> None:
        self._start = time.perf_counter()
        self._stopped = False

    def stop(self) -> None:
        self._end = time.perf_counter()
        self._stopped = True

    @property
    def duration_ms(self) -> float:
        """Elapsed time in milliseconds, up to now if still running."""
        end = self._end if self._stopped else time.perf_counter()
        return (end - self._start) * 1000


__all__ = [
    "MetricSnapshot",
    "RelayMetrics",
]
