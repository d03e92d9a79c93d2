"""
Serialization utilities for eventrelay.

Example:
    >>> from eventrelay.serialization import json_dumps, RelayJSONEncoder
    >>> from uuid import uuid4
    >>>
    >>> json_str = json_dumps({"id": uuid4()})
"""

from eventrelay.serialization.json import (
    RelayJSONEncoder,
    json_dumps,
    json_loads,
)

__all__ = [
    "RelayJSONEncoder",
    "json_dumps",
    "json_loads",
]
