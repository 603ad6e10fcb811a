"""
Test utilities for taskrelay.

Components:
    InMemoryBroker: AMQP broker double with the aio-pika robust connection
        API, for end-to-end tests of publisher, consumer and coordinator

Note:
    This module is intended for test code only. It should not be imported
    in production code paths.
"""

from taskrelay.testing.amqp import (
    InMemoryBroker,
    InMemoryChannel,
    InMemoryConnection,
    InMemoryExchange,
    InMemoryIncomingMessage,
    InMemoryQueue,
)

__all__ = [
    "InMemoryBroker",
    "InMemoryConnection",
    "InMemoryChannel",
    "InMemoryExchange",
    "InMemoryQueue",
    "InMemoryIncomingMessage",
]
