"""Library exceptions for the eventrelay package."""

from uuid import UUID


class EventRelayError(Exception):
    """Base exception for eventrelay library."""

    pass


class ConfigurationError(EventRelayError, ValueError):
    """Raised when a configuration value is invalid."""

    pass


class SerializationError(EventRelayError):
    """Raised when a message payload cannot be serialized."""

    def __init__(self, message_type: str, message: str) -> None:
        self.message_type = message_type
        super().__init__(f"Serialization error for {message_type}: {message}")


class StoreUnavailableError(EventRelayError):
    """
    Raised when the outbox or inbox persistence cannot be reached.

    Fatal for the current processing cycle: the processor stops claiming
    and retries the whole cycle after a delay.
    """

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        self.cause = cause
        super().__init__(message)


# =============================================================================
# Publish errors
# =============================================================================


class PublishError(EventRelayError):
    """Base class for errors raised while relaying a message to the transport."""

    pass


class TransientPublishError(PublishError):
    """
    Raised for network, timeout or broker-unavailable failures.

    Messages failing with this error are rescheduled with backoff.
    """

    pass


class PermanentError(PublishError):
    """
    Raised for failures that will never succeed on retry.

    Messages failing with this error are dead-lettered immediately.
    """

    pass


class UnknownMessageTypeError(PermanentError):
    """Raised when a message type has no registered payload model."""

    def __init__(self, message_type: str, available_types: list[str]) -> None:
        self.message_type = message_type
        self.available_types = available_types
        available = ", ".join(sorted(available_types)) if available_types else "none"
        super().__init__(
            f"Unknown message type: '{message_type}'. Available types: {available}."
        )


class DeserializationError(PermanentError):
    """Raised when a stored payload is not valid JSON."""

    def __init__(self, message_type: str, message: str) -> None:
        self.message_type = message_type
        super().__init__(f"Cannot deserialize payload of {message_type}: {message}")


class SchemaViolationError(PermanentError):
    """Raised when a payload does not match the registered model for its type."""

    def __init__(self, message_type: str, message: str) -> None:
        self.message_type = message_type
        super().__init__(f"Payload of {message_type} violates its schema: {message}")


# =============================================================================
# Store-level outcomes
# =============================================================================


class DuplicateInboxError(EventRelayError):
    """
    Raised when an inbox record already exists for a message and handler.

    This is the "already handled" signal of the idempotent dispatcher and
    is never reported as a failure.
    """

    def __init__(self, message_id: UUID, handler_type: str) -> None:
        self.message_id = message_id
        self.handler_type = handler_type
        super().__init__(f"Message {message_id} already processed by {handler_type}")


class ConcurrentClaimConflict(EventRelayError):
    """
    Raised when a row is already claimed by another processor instance.

    Claim implementations skip locked rows, so this never reaches callers
    of ``claim_batch``.
    """

    def __init__(self, message_id: UUID) -> None:
        self.message_id = message_id
        super().__init__(f"Outbox message {message_id} is claimed by another instance")


class ClaimLostError(EventRelayError):
    """Raised when a processor no longer owns the claim it tries to complete."""

    def __init__(self, message_id: UUID, owner: str) -> None:
        self.message_id = message_id
        self.owner = owner
        super().__init__(f"Claim on outbox message {message_id} is no longer held by {owner}")


class DeadLetterNotFoundError(EventRelayError):
    """Raised when a dead-letter record cannot be found."""

    def __init__(self, message_id: UUID) -> None:
        self.message_id = message_id
        super().__init__(f"Dead-letter record not found: {message_id}")


__all__ = [
    "EventRelayError",
    "ConfigurationError",
    "SerializationError",
    "StoreUnavailableError",
    "PublishError",
    "TransientPublishError",
    "PermanentError",
    "UnknownMessageTypeError",
    "DeserializationError",
    "SchemaViolationError",
    "DuplicateInboxError",
    "ConcurrentClaimConflict",
    "ClaimLostError",
    "DeadLetterNotFoundError",
]
