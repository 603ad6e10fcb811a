"""
JSON serialization utilities for taskrelay payloads and cache values.

Message bodies and cached result sets carry UUIDs, datetimes and enums
that the standard encoder refuses. The helpers here encode them to their
string forms; decoding is plain `json.loads` and the pydantic models
coerce the strings back.

Example:
    >>> from taskrelay.serialization import json_dumps, json_loads
    >>> body = json_dumps({"id": uuid4(), "at": datetime.now(UTC)})
    >>> json_loads(body)["id"]
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID


class TaskRelayJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles UUID, datetime and Enum values."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


def json_dumps(obj: Any) -> str:
    """
    Serialize object to a compact JSON string.

    Args:
        obj: Object to serialize

    Returns:
        JSON string representation
    """
    return json.dumps(obj, cls=TaskRelayJSONEncoder, separators=(",", ":"))


def json_dumpb(obj: Any) -> bytes:
    """Serialize object to UTF-8 encoded JSON bytes (message bodies, cache values)."""
    return json_dumps(obj).encode("utf-8")


def json_loads(s: str | bytes) -> Any:
    """
    Deserialize JSON text or bytes to a Python object.

    UUID and datetime strings are NOT converted back; the models do that.
    """
    return json.loads(s)


__all__ = [
    "TaskRelayJSONEncoder",
    "json_dumps",
    "json_dumpb",
    "json_loads",
]
