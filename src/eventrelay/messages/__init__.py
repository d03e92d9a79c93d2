"""
Message payload models and the envelope delivered to consumers.
"""

from eventrelay.messages.envelope import ReceivedMessage, build_metadata
from eventrelay.messages.registry import (
    DuplicateMessageTypeError,
    MessageRegistry,
    default_registry,
    register_message,
)

__all__ = [
    "MessageRegistry",
    "DuplicateMessageTypeError",
    "ReceivedMessage",
    "build_metadata",
    "default_registry",
    "register_message",
]
