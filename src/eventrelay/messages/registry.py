"""
Message type registry for encoding and decoding outbox payloads.

Maps message type tags to pydantic payload models. The processor uses it
to verify that a stored payload can be decoded before relaying it, and
consumers use it to turn a received payload back into a model.

Usage:
    # Decorator-based registration (type tag defaults to the class name)
    @register_message
    class OrderPlaced(BaseModel):
        order_id: UUID

    # Decorator with explicit type tag
    @register_message(message_type="order.shipped")
    class OrderShipped(BaseModel):
        ...

    # Isolated registry, e.g. in tests
    registry = MessageRegistry()
    registry.register(OrderPlaced)

    # Lookup and decoding
    model = registry.decode("OrderPlaced", '{"order_id": "..."}')
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Iterator
from typing import Any, TypeVar, overload

from pydantic import BaseModel, ValidationError

from eventrelay.exceptions import (
    DeserializationError,
    EventRelayError,
    SchemaViolationError,
    SerializationError,
    UnknownMessageTypeError,
)
from eventrelay.serialization import json_dumps

logger = logging.getLogger(__name__)

TModel = TypeVar("TModel", bound=BaseModel)


class DuplicateMessageTypeError(EventRelayError, ValueError):
    """Raised when a type tag is already registered to a different model."""

    def __init__(
        self,
        message_type: str,
        existing_class: type[BaseModel],
        new_class: type[BaseModel],
    ) -> None:
        self.message_type = message_type
        self.existing_class = existing_class
        self.new_class = new_class
        super().__init__(
            f"Message type '{message_type}' is already registered to "
            f"{existing_class.__name__}. Cannot register {new_class.__name__} "
            "with the same type tag."
        )


class MessageRegistry:
    """
    Registry mapping message type tags to payload models.

    Thread-Safety:
        All operations use an internal lock.

    Example:
        >>> registry = MessageRegistry()
        >>> registry.register(OrderPlaced)
        >>> registry.decode("OrderPlaced", payload_json)
        OrderPlaced(order_id=...)
    """

    def __init__(self) -> None:
        self._registry: dict[str, type[BaseModel]] = {}
        self._lock = threading.RLock()

    def register(
        self,
        model_class: type[TModel],
        message_type: str | None = None,
    ) -> type[TModel]:
        """
        Register a payload model.

        Args:
            model_class: The pydantic model describing the payload
            message_type: Type tag override; defaults to the class name

        Returns:
            The registered model class (enables use as decorator)

        Raises:
            DuplicateMessageTypeError: If the tag belongs to another model
        """
        resolved = message_type or model_class.__name__

        with self._lock:
            existing = self._registry.get(resolved)
            if existing is not None:
                if existing is not model_class:
                    raise DuplicateMessageTypeError(resolved, existing, model_class)
                return model_class

            self._registry[resolved] = model_class
            logger.debug(
                "Registered message type '%s' -> %s",
                resolved,
                model_class.__name__,
                extra={"message_type": resolved, "model_class": model_class.__name__},
            )
            return model_class

    def get(self, message_type: str) -> type[BaseModel]:
        """
        Get the payload model for a type tag.

        Raises:
            UnknownMessageTypeError: If the tag is not registered
        """
        with self._lock:
            if message_type not in self._registry:
                raise UnknownMessageTypeError(message_type, list(self._registry.keys()))
            return self._registry[message_type]

    def get_or_none(self, message_type: str) -> type[BaseModel] | None:
        with self._lock:
            return self._registry.get(message_type)

    def type_of(self, model: BaseModel) -> str:
        """
        Return the type tag a model instance is registered under.

        Raises:
            UnknownMessageTypeError: If the model class is not registered
        """
        with self._lock:
            for message_type, model_class in self._registry.items():
                if model_class is type(model):
                    return message_type
            raise UnknownMessageTypeError(type(model).__name__, list(self._registry.keys()))

    def encode(self, message_type: str, payload: BaseModel | dict[str, Any] | str) -> str:
        """
        Serialize a payload to the JSON text stored in the outbox.

        Accepts a model, a JSON-serializable mapping or an already
        serialized JSON string, which is checked for validity but stored
        as given.

        Raises:
            SerializationError: If the payload cannot be serialized
        """
        if isinstance(payload, BaseModel):
            return payload.model_dump_json()
        if isinstance(payload, str):
            try:
                json.loads(payload)
            except ValueError as e:
                raise SerializationError(message_type, f"payload is not valid JSON: {e}") from e
            return payload
        try:
            return json_dumps(payload)
        except (TypeError, ValueError) as e:
            raise SerializationError(message_type, str(e)) from e

    def decode(self, message_type: str, payload: str | bytes) -> BaseModel:
        """
        Decode a stored payload into its registered model.

        Raises:
            UnknownMessageTypeError: If the tag is not registered
            DeserializationError: If the payload is not valid JSON
            SchemaViolationError: If the payload does not match the model
        """
        model_class = self.get(message_type)
        try:
            data = json.loads(payload)
        except ValueError as e:
            raise DeserializationError(message_type, str(e)) from e
        try:
            return model_class.model_validate(data)
        except ValidationError as e:
            raise SchemaViolationError(message_type, str(e)) from e

    def contains(self, message_type: str) -> bool:
        with self._lock:
            return message_type in self._registry

    def list_types(self) -> list[str]:
        """Sorted list of registered type tags."""
        with self._lock:
            return sorted(self._registry.keys())

    def clear(self) -> None:
        """
        Clear all registered message types.

        Primarily useful for testing to reset state between tests.
        """
        with self._lock:
            self._registry.clear()
            logger.debug("Message registry cleared")

    def unregister(self, message_type: str) -> bool:
        with self._lock:
            if message_type in self._registry:
                del self._registry[message_type]
                return True
            return False

    def __len__(self) -> int:
        with self._lock:
            return len(self._registry)

    def __bool__(self) -> bool:
        """Registry is always truthy, even when empty."""
        return True

    def __contains__(self, message_type: str) -> bool:
        return self.contains(message_type)

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(list(self._registry.keys()))


# Module-level default registry instance
default_registry = MessageRegistry()


@overload
def register_message(model_class: type[TModel]) -> type[TModel]: ...


@overload
def register_message(
    model_class: None = None,
    *,
    message_type: str | None = None,
    registry: MessageRegistry | None = None,
) -> Callable[[type[TModel]], type[TModel]]: ...


def register_message(
    model_class: type[TModel] | None = None,
    *,
    message_type: str | None = None,
    registry: MessageRegistry | None = None,
) -> type[TModel] | Callable[[type[TModel]], type[TModel]]:
    """
    Decorator to register a payload model.

    Can be used with or without parentheses:

        @register_message
        class OrderPlaced(BaseModel):
            ...

        @register_message(message_type="order.placed", registry=custom_registry)
        class OrderPlaced(BaseModel):
            ...
    """
    target_registry = registry or default_registry

    def decorator(cls: type[TModel]) -> type[TModel]:
        return target_registry.register(cls, message_type)

    if model_class is not None:
        return decorator(model_class)
    return decorator


__all__ = [
    "MessageRegistry",
    "DuplicateMessageTypeError",
    "default_registry",
    "register_message",
]
