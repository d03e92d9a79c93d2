"""
Observability utilities for eventrelay.

Composition-based tracing, relay metrics and standard attribute
definitions shared by every component.

Example:
    >>> from eventrelay.observability import create_tracer
    >>>
    >>> class MyRepository:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
"""

from eventrelay.observability.attributes import (
    ATTR_ATTEMPT,
    ATTR_BATCH_SIZE,
    ATTR_CAUSATION_ID,
    ATTR_CLAIM_OWNER,
    ATTR_CORRELATION_ID,
    ATTR_DB_SYSTEM,
    ATTR_DISPATCH_OUTCOME,
    ATTR_ERROR_TYPE,
    ATTR_HANDLER_TYPE,
    ATTR_MESSAGE_COUNT,
    ATTR_MESSAGE_ID,
    ATTR_MESSAGE_TYPE,
    ATTR_MESSAGING_OPERATION,
    ATTR_MESSAGING_SYSTEM,
    ATTR_ORDERING_KEY,
)
from eventrelay.observability.metrics import MetricSnapshot, RelayMetrics
from eventrelay.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    SpanKindEnum,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "SpanKindEnum",
    "create_tracer",
    # Metrics
    "RelayMetrics",
    "MetricSnapshot",
    # Attributes
    "ATTR_ATTEMPT",
    "ATTR_BATCH_SIZE",
    "ATTR_CAUSATION_ID",
    "ATTR_CLAIM_OWNER",
    "ATTR_CORRELATION_ID",
    "ATTR_DB_SYSTEM",
    "ATTR_DISPATCH_OUTCOME",
    "ATTR_ERROR_TYPE",
    "ATTR_HANDLER_TYPE",
    "ATTR_MESSAGE_COUNT",
    "ATTR_MESSAGE_ID",
    "ATTR_MESSAGE_TYPE",
    "ATTR_MESSAGING_OPERATION",
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_ORDERING_KEY",
]
