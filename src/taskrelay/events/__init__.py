"""Event envelope and task lifecycle event types."""

from taskrelay.events.envelope import (
    HEADER_ORIGINAL_ROUTING_KEY,
    HEADER_RETRY_COUNT,
    HEADER_SCHEMA_VERSION,
    SCHEMA_VERSION,
    TASK_BINDING,
    TASK_EXCHANGE,
    EventEnvelope,
    TaskEventPayload,
    TaskEventType,
    validate_routing_key,
)

__all__ = [
    "TASK_EXCHANGE",
    "TASK_BINDING",
    "SCHEMA_VERSION",
    "HEADER_SCHEMA_VERSION",
    "HEADER_RETRY_COUNT",
    "HEADER_ORIGINAL_ROUTING_KEY",
    "TaskEventType",
    "EventEnvelope",
    "TaskEventPayload",
    "validate_routing_key",
]
