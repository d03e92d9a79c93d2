"""
Producer side of the relay: writer, claims, retry policy and processor.
"""

from eventrelay.outbox.claims import ClaimCoordinator
from eventrelay.outbox.processor import CycleResult, OutboxProcessor, default_instance_id
from eventrelay.outbox.retry import (
    TRANSIENT_EXCEPTIONS,
    ErrorClassifier,
    RetryDecision,
    RetryScheduler,
    calculate_backoff,
    default_error_classifier,
    strict_error_classifier,
)
from eventrelay.outbox.writer import OutboxWriter

__all__ = [
    # Writer
    "OutboxWriter",
    # Claims
    "ClaimCoordinator",
    # Retry
    "TRANSIENT_EXCEPTIONS",
    "ErrorClassifier",
    "RetryDecision",
    "RetryScheduler",
    "calculate_backoff",
    "default_error_classifier",
    "strict_error_classifier",
    # Processor
    "CycleResult",
    "OutboxProcessor",
    "default_instance_id",
]
