"""
Observability utilities for taskrelay.

Tracing is composition-based: components take a `tracer=` argument or
build one with `create_tracer(__name__, enable_tracing)`.
"""

from taskrelay.observability.attributes import (
    ATTR_CACHE_HIT,
    ATTR_EVENT_TYPE,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_MESSAGE_ID,
    ATTR_MESSAGING_ROUTING_KEY,
    ATTR_MESSAGING_SYSTEM,
    ATTR_OPERATION,
    ATTR_OWNER_ID,
    ATTR_PUBLISH_OUTCOME,
    ATTR_RETRY_COUNT,
    ATTR_TASK_ID,
)
from taskrelay.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    SpanKindEnum,
    Tracer,
    create_tracer,
)

__all__ = [
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "SpanKindEnum",
    "create_tracer",
    "ATTR_CACHE_HIT",
    "ATTR_EVENT_TYPE",
    "ATTR_MESSAGING_DESTINATION",
    "ATTR_MESSAGING_MESSAGE_ID",
    "ATTR_MESSAGING_ROUTING_KEY",
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_OPERATION",
    "ATTR_OWNER_ID",
    "ATTR_PUBLISH_OUTCOME",
    "ATTR_RETRY_COUNT",
    "ATTR_TASK_ID",
]
