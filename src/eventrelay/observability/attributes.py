"""
Standard span and metric attributes for eventrelay.

Attribute constants used across all eventrelay components for consistent
span naming and metrics labeling. These follow OpenTelemetry semantic
conventions where applicable.

Example:
    >>> from eventrelay.observability.attributes import (
    ...     ATTR_MESSAGE_ID,
    ...     ATTR_MESSAGE_TYPE,
    ... )
    >>>
    >>> with tracer.span(
    ...     "eventrelay.outbox.append",
    ...     {ATTR_MESSAGE_ID: str(message_id), ATTR_MESSAGE_TYPE: "OrderPlaced"},
    ... ):
    ...     pass
"""

# =============================================================================
# Message Attributes
# =============================================================================

ATTR_MESSAGE_ID = "eventrelay.message.id"
"""Unique identifier of the outbox message (UUID string)."""

ATTR_MESSAGE_TYPE = "eventrelay.message.type"
"""Type tag of the message (e.g., 'OrderPlaced')."""

ATTR_MESSAGE_COUNT = "eventrelay.message.count"
"""Number of messages in an operation (integer)."""

ATTR_ATTEMPT = "eventrelay.message.attempt"
"""Retry attempt number of a message (integer)."""

ATTR_ORDERING_KEY = "eventrelay.message.ordering_key"
"""Entity or session key used to serialize handling (string)."""

# =============================================================================
# Correlation Attributes
# =============================================================================

ATTR_CORRELATION_ID = "eventrelay.correlation.id"
"""Identifier shared by every message of a causal chain (UUID string)."""

ATTR_CAUSATION_ID = "eventrelay.causation.id"
"""Identifier of the immediate parent message (UUID string)."""

# =============================================================================
# Component Attributes
# =============================================================================

ATTR_CLAIM_OWNER = "eventrelay.claim.owner"
"""Processor instance that owns a claim (string)."""

ATTR_BATCH_SIZE = "eventrelay.batch.size"
"""Maximum number of rows requested by a claim (integer)."""

ATTR_HANDLER_TYPE = "eventrelay.handler.type"
"""Name of the consumer handler (string)."""

ATTR_DISPATCH_OUTCOME = "eventrelay.dispatch.outcome"
"""Outcome of an idempotent dispatch: processed or duplicate (string)."""

ATTR_ERROR_TYPE = "eventrelay.error.type"
"""Class name of the error that caused a failure (string)."""

# =============================================================================
# Database Attributes (OpenTelemetry Semantic Conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g., 'sqlite', 'postgresql', 'memory')."""

# =============================================================================
# Messaging Attributes (OpenTelemetry Semantic Conventions)
# =============================================================================

ATTR_MESSAGING_SYSTEM = "messaging.system"
"""Messaging system identifier (e.g., 'memory')."""

ATTR_MESSAGING_OPERATION = "messaging.operation"
"""Messaging operation type (e.g., 'publish', 'process')."""


__all__ = [
    "ATTR_MESSAGE_ID",
    "ATTR_MESSAGE_TYPE",
    "ATTR_MESSAGE_COUNT",
    "ATTR_ATTEMPT",
    "ATTR_ORDERING_KEY",
    "ATTR_CORRELATION_ID",
    "ATTR_CAUSATION_ID",
    "ATTR_CLAIM_OWNER",
    "ATTR_BATCH_SIZE",
    "ATTR_HANDLER_TYPE",
    "ATTR_DISPATCH_OUTCOME",
    "ATTR_ERROR_TYPE",
    "ATTR_DB_SYSTEM",
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_MESSAGING_OPERATION",
]
