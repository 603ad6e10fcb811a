"""Serialization helpers for taskrelay."""

from taskrelay.serialization.json import (
    TaskRelayJSONEncoder,
    json_dumpb,
    json_dumps,
    json_loads,
)

__all__ = [
    "TaskRelayJSONEncoder",
    "json_dumps",
    "json_dumpb",
    "json_loads",
]
