"""
taskrelay - Reliable task lifecycle events over RabbitMQ.

This library provides:
- Confirmed publishing with a shared reconnect state machine
- Topic routing and a bounded, acknowledging consumer with dead-lettering
- An owner-keyed read-through cache with synchronous invalidation
- A mutation coordinator ordering write, invalidate, publish
- Notification processing on top of the consumer
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("taskrelay")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from taskrelay.broker import (
    BoundedConsumer,
    BrokerConfig,
    BrokerConnection,
    ConnectionState,
    PublishFailureKind,
    PublishResult,
    RedeliveryPolicy,
    ReliablePublisher,
    TopicTopology,
    routing_key_matches,
)
from taskrelay.cache import (
    CacheBackend,
    CacheConfig,
    InMemoryCacheBackend,
    ReadThroughCache,
    RedisCacheBackend,
)
from taskrelay.events import (
    TASK_BINDING,
    TASK_EXCHANGE,
    EventEnvelope,
    TaskEventPayload,
    TaskEventType,
)
from taskrelay.exceptions import (
    BrokerError,
    BrokerUnavailableError,
    CacheBackendError,
    EnvelopeDecodeError,
    EventPublishError,
    NonRetryableMessageError,
    StoreError,
    TaskNotFoundError,
    TaskRelayError,
    TopologyError,
    UnauthenticatedError,
    ValidationFailedError,
)
from taskrelay.identity import VerifiedIdentity, require_identity
from taskrelay.notifications import (
    InMemoryNotificationStore,
    Notification,
    NotificationInbox,
    NotificationProcessor,
    NotificationStore,
    NotificationType,
    NotificationWorker,
    SQLNotificationStore,
)
from taskrelay.settings import TaskRelaySettings
from taskrelay.tasks import (
    InMemoryTaskStore,
    PublishFailurePolicy,
    SQLTaskStore,
    Task,
    TaskCreate,
    TaskMutationCoordinator,
    TaskStatus,
    TaskStore,
    TaskUpdate,
)

__all__ = [
    "__version__",
    # Broker
    "BoundedConsumer",
    "BrokerConfig",
    "BrokerConnection",
    "ConnectionState",
    "PublishFailureKind",
    "PublishResult",
    "RedeliveryPolicy",
    "ReliablePublisher",
    "TopicTopology",
    "routing_key_matches",
    # Cache
    "CacheBackend",
    "CacheConfig",
    "InMemoryCacheBackend",
    "ReadThroughCache",
    "RedisCacheBackend",
    # Events
    "TASK_BINDING",
    "TASK_EXCHANGE",
    "EventEnvelope",
    "TaskEventPayload",
    "TaskEventType",
    # Exceptions
    "BrokerError",
    "BrokerUnavailableError",
    "CacheBackendError",
    "EnvelopeDecodeError",
    "EventPublishError",
    "NonRetryableMessageError",
    "StoreError",
    "TaskNotFoundError",
    "TaskRelayError",
    "TopologyError",
    "UnauthenticatedError",
    "ValidationFailedError",
    # Identity
    "VerifiedIdentity",
    "require_identity",
    # Notifications
    "InMemoryNotificationStore",
    "Notification",
    "NotificationInbox",
    "NotificationProcessor",
    "NotificationStore",
    "NotificationType",
    "NotificationWorker",
    "SQLNotificationStore",
    # Settings
    "TaskRelaySettings",
    # Tasks
    "InMemoryTaskStore",
    "PublishFailurePolicy",
    "SQLTaskStore",
    "Task",
    "TaskCreate",
    "TaskMutationCoordinator",
    "TaskStatus",
    "TaskStore",
    "TaskUpdate",
]
