"""
Tracers handed to relay components.

Every component that traces (writer, processor, dispatcher, admin,
transport) takes an optional ``tracer`` and an ``enable_tracing`` flag and
resolves them once in its constructor:

    >>> self._tracer = tracer or create_tracer(__name__, enable_tracing)

Spans are then opened with ``self._tracer.span(...)``. The yielded value is
an OpenTelemetry ``Span`` or ``None``; callers check for ``None`` before
setting attributes after the span has started.

Example:
    >>> tracer = MockTracer()
    >>> writer = OutboxWriter(stores.outbox, tracer=tracer)
    >>> await writer.append(txn, "OrderPlaced", payload)
    >>> tracer.span_names
    ['eventrelay.outbox.append']
"""

from __future__ import annotations

import contextlib
from collections.abc import Generator
from contextlib import AbstractContextManager
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from opentelemetry import trace
from opentelemetry.trace import SpanKind

if TYPE_CHECKING:
    from opentelemetry.trace import Span


class SpanKindEnum(Enum):
    """
    Kinds of span the relay opens.

    Values:
        INTERNAL: Store work such as claiming, replay and housekeeping
        PRODUCER: Handing a message to the transport
        CONSUMER: Dispatching a received message to handlers
    """

    INTERNAL = "internal"
    PRODUCER = "producer"
    CONSUMER = "consumer"


_OTEL_KINDS = {
    SpanKindEnum.INTERNAL: SpanKind.INTERNAL,
    SpanKindEnum.PRODUCER: SpanKind.PRODUCER,
    SpanKindEnum.CONSUMER: SpanKind.CONSUMER,
}


@runtime_checkable
class Tracer(Protocol):
    """Opens spans for relay operations; see the module docstring."""

    @property
    def enabled(self) -> bool:
        """False when spans are never recorded."""
        ...

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        """
        Open an INTERNAL span.

        Args:
            name: ``eventrelay.<component>.<operation>``, e.g.
                ``eventrelay.processor.cycle``
            attributes: Initial attributes, keys from
                ``eventrelay.observability.attributes``
        """
        ...

    def span_with_kind(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        """Open a span of the given kind."""
        ...


class NullTracer:
    """Tracer used when tracing is switched off; every span is ``None``."""

    @property
    def enabled(self) -> bool:
        return False

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[None]:
        return self.span_with_kind(name, SpanKindEnum.INTERNAL, attributes)

    @contextlib.contextmanager
    def span_with_kind(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        yield None


class OpenTelemetryTracer:
    """
    Spans through the global OpenTelemetry tracer provider.

    With no SDK provider installed the API returns non-recording spans, so
    the relay can trace unconditionally and leave exporting to the host
    application.

    Args:
        tracer_name: Instrumentation scope, normally the module ``__name__``
    """

    def __init__(self, tracer_name: str) -> None:
        self._tracer = trace.get_tracer(tracer_name)

    @property
    def enabled(self) -> bool:
        return True

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        return self.span_with_kind(name, SpanKindEnum.INTERNAL, attributes)

    def span_with_kind(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        return self._tracer.start_as_current_span(
            name,
            kind=_OTEL_KINDS[kind],
            attributes=attributes or {},
        )


class MockTracer:
    """
    Tracer for tests.

    ``spans`` holds ``(name, attributes)`` pairs in the order spans were
    opened and ``kinds`` the matching span kinds. Spans yield ``None``, so
    attributes set after a span starts are not recorded.
    """

    def __init__(self) -> None:
        self.spans: list[tuple[str, dict[str, Any] | None]] = []
        self.kinds: list[SpanKindEnum] = []

    @property
    def enabled(self) -> bool:
        return True

    @property
    def span_names(self) -> list[str]:
        return [name for name, _ in self.spans]

    def clear(self) -> None:
        self.spans.clear()
        self.kinds.clear()

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[None]:
        return self.span_with_kind(name, SpanKindEnum.INTERNAL, attributes)

    @contextlib.contextmanager
    def span_with_kind(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        self.spans.append((name, attributes))
        self.kinds.append(kind)
        yield None


def create_tracer(name: str, enable_tracing: bool = True) -> Tracer:
    """Return an ``OpenTelemetryTracer`` for ``name``, or a ``NullTracer`` when disabled."""
    if enable_tracing:
        return OpenTelemetryTracer(name)
    return NullTracer()


__all__ = [
    "MockTracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "SpanKindEnum",
    "Tracer",
    "create_tracer",
]
