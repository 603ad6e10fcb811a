"""
Standard span attributes for taskrelay.

Names follow OpenTelemetry messaging semantic conventions where they
exist, and the `taskrelay.` namespace otherwise.
"""

# =============================================================================
# Messaging Attributes
# =============================================================================

ATTR_MESSAGING_SYSTEM = "messaging.system"
"""Messaging system identifier ('rabbitmq')."""

ATTR_MESSAGING_DESTINATION = "messaging.destination.name"
"""Exchange (publish) or queue (consume) name."""

ATTR_MESSAGING_MESSAGE_ID = "messaging.message.id"
"""AMQP message id of the envelope."""

ATTR_MESSAGING_ROUTING_KEY = "messaging.rabbitmq.destination.routing_key"
"""Routing key the envelope was published with."""

# =============================================================================
# Envelope Attributes
# =============================================================================

ATTR_EVENT_TYPE = "taskrelay.event.type"
"""Routing key treated as the event type (e.g. 'task.created')."""

ATTR_RETRY_COUNT = "taskrelay.retry.count"
"""Consumer-side redelivery counter carried in x-retry-count."""

ATTR_PUBLISH_OUTCOME = "taskrelay.publish.outcome"
"""'success' or the PublishFailureKind value."""

# =============================================================================
# Domain Attributes
# =============================================================================

ATTR_OWNER_ID = "taskrelay.owner.id"
"""Owner (verified subject id) a task or notification belongs to."""

ATTR_TASK_ID = "taskrelay.task.id"
"""Task identifier."""

ATTR_OPERATION = "taskrelay.operation"
"""Mutation name ('create', 'update', 'complete', 'reopen', 'delete')."""

ATTR_CACHE_HIT = "taskrelay.cache.hit"
"""Whether a read-through cache lookup was served from the cache."""

__all__ = [
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_MESSAGING_DESTINATION",
    "ATTR_MESSAGING_MESSAGE_ID",
    "ATTR_MESSAGING_ROUTING_KEY",
    "ATTR_EVENT_TYPE",
    "ATTR_RETRY_COUNT",
    "ATTR_PUBLISH_OUTCOME",
    "ATTR_OWNER_ID",
    "ATTR_TASK_ID",
    "ATTR_OPERATION",
    "ATTR_CACHE_HIT",
]
