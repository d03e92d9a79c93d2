"""
Unit tests for the exception hierarchy.
"""

from uuid import uuid4

import pytest

from eventrelay.exceptions import (
    ClaimLostError,
    ConfigurationError,
    DeadLetterNotFoundError,
    DeserializationError,
    DuplicateInboxError,
    EventRelayError,
    PermanentError,
    PublishError,
    SchemaViolationError,
    StoreUnavailableError,
    TransientPublishError,
    UnknownMessageTypeError,
)


class TestHierarchy:
    @pytest.mark.parametrize(
        "error",
        [
            UnknownMessageTypeError("Mystery", []),
            DeserializationError("OrderPlaced", "bad json"),
            SchemaViolationError("OrderPlaced", "missing order_id"),
        ],
    )
    def test_decode_failures_are_permanent(self, error):
        assert isinstance(error, PermanentError)
        assert isinstance(error, PublishError)
        assert error.message_type in str(error)

    def test_transient_is_not_permanent(self):
        assert not isinstance(TransientPublishError("busy"), PermanentError)

    def test_configuration_error_is_value_error(self):
        assert isinstance(ConfigurationError("bad"), ValueError)
        assert isinstance(ConfigurationError("bad"), EventRelayError)


class TestAttributes:
    def test_unknown_type_lists_available(self):
        error = UnknownMessageTypeError("Mystery", ["OrderPlaced", "InventoryReserved"])
        assert "InventoryReserved, OrderPlaced" in str(error)
        assert "none" in str(UnknownMessageTypeError("Mystery", []))

    def test_store_unavailable_keeps_cause(self):
        cause = OSError("connection refused")
        error = StoreUnavailableError("outbox unreachable", cause)
        assert error.cause is cause

    def test_ids_are_kept(self):
        message_id = uuid4()
        assert DuplicateInboxError(message_id, "inventory").handler_type == "inventory"
        assert ClaimLostError(message_id, "relay-1").owner == "relay-1"
        assert DeadLetterNotFoundError(message_id).message_id == message_id
        assert str(message_id) in str(ClaimLostError(message_id, "relay-1"))
