"""
JSON serialization utilities for message payloads.

Payloads travel through the outbox as JSON strings. This module provides
the encoder used for values that are not natively JSON-serializable, such
as UUIDs, datetimes and pydantic models nested inside plain dictionaries.

Example:
    >>> from eventrelay.serialization import json_dumps, json_loads
    >>> from uuid import uuid4
    >>>
    >>> data = {"order_id": uuid4()}
    >>> json_str = json_dumps(data)
    >>> parsed = json_loads(json_str)
"""

import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel


class RelayJSONEncoder(json.JSONEncoder):
    """
    JSON encoder that handles UUID, datetime, Decimal, Enum and pydantic models.

    Example:
        >>> import json
        >>> from uuid import uuid4
        >>> json.dumps({"id": uuid4()}, cls=RelayJSONEncoder)
    """

    def default(self, obj: Any) -> Any:
        """
        Convert non-serializable objects to JSON-serializable formats.

        Raises:
            TypeError: If object type is not supported
        """
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        return super().default(obj)


def json_dumps(obj: Any) -> str:
    """
    Serialize object to a compact JSON string using RelayJSONEncoder.

    Args:
        obj: Object to serialize

    Returns:
        JSON string representation
    """
    return json.dumps(obj, cls=RelayJSONEncoder, separators=(",", ":"))


def json_loads(s: str | bytes) -> Any:
    """
    Deserialize JSON string to Python object.

    UUID and datetime strings are NOT converted back to their original
    types; payload models do that through pydantic validation.
    """
    return json.loads(s)


__all__ = [
    "RelayJSONEncoder",
    "json_dumps",
    "json_loads",
]
