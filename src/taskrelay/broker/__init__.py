"""RabbitMQ transport: supervised connection, topology, publisher and consumer."""

from taskrelay.broker.config import BrokerConfig, RedeliveryPolicy
from taskrelay.broker.connection import (
    BrokerConnection,
    ConnectionState,
    ConnectionStats,
    TopologyHook,
)
from taskrelay.broker.consumer import BoundedConsumer, ConsumerStats, MessageCallback
from taskrelay.broker.publisher import (
    PublisherStats,
    PublishFailureKind,
    PublishResult,
    ReliablePublisher,
)
from taskrelay.broker.topology import TopicTopology, routing_key_matches

__all__ = [
    "BrokerConfig",
    "RedeliveryPolicy",
    "BrokerConnection",
    "ConnectionState",
    "ConnectionStats",
    "TopologyHook",
    "BoundedConsumer",
    "ConsumerStats",
    "MessageCallback",
    "ReliablePublisher",
    "PublishResult",
    "PublishFailureKind",
    "PublisherStats",
    "TopicTopology",
    "routing_key_matches",
]
