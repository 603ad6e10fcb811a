"""Topic routing topology: exchange, consumer-group queues and dead-lettering.

Every declaration is idempotent and is re-run after each (re)connect. A
declaration that conflicts with what the broker already holds (for example
the exchange exists with a different type) fails with `TopologyError`,
which the reconnect protocol counts as a failed connect attempt.
"""

from __future__ import annotations

import logging

from aio_pika import ExchangeType
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractQueue
from aio_pika.exceptions import AMQPError

from taskrelay.broker.config import BrokerConfig
from taskrelay.exceptions import TopologyError

logger = logging.getLogger(__name__)


def routing_key_matches(pattern: str, routing_key: str) -> bool:
    """
    AMQP topic matching: `*` matches exactly one segment, `#` zero or more.

    Example:
        >>> routing_key_matches("task.*", "task.created")
        True
        >>> routing_key_matches("task.*", "task.created.v2")
        False
        >>> routing_key_matches("task.#", "task")
        True
    """
    return _match(pattern.split("."), routing_key.split("."))


def _match(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        # '#' may swallow any number of segments, including none
        return any(_match(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match(rest, words[1:])
    return False


class TopicTopology:
    """
    Declares the broker objects one component needs.

    Example:
        >>> topology = TopicTopology(BrokerConfig())
        >>> exchange = await topology.declare_exchange(channel)
        >>> queue = await topology.declare_consumer_queue(channel, exchange)
    """

    def __init__(self, config: BrokerConfig) -> None:
        self._config = config

    async def declare_exchange(self, channel: AbstractChannel) -> AbstractExchange:
        """Assert the durable topic exchange events are published to."""
        try:
            exchange = await channel.declare_exchange(
                name=self._config.exchange_name,
                type=ExchangeType(self._config.exchange_type),
                durable=self._config.durable,
                auto_delete=self._config.auto_delete,
            )
        except AMQPError as e:
            raise TopologyError(
                f"Cannot declare exchange {self._config.exchange_name}: {e}"
            ) from e

        logger.debug(
            f"Declared exchange: {self._config.exchange_name}",
            extra={
                "exchange": self._config.exchange_name,
                "exchange_type": self._config.exchange_type,
                "durable": self._config.durable,
            },
        )
        return exchange

    async def declare_dead_letter(self, channel: AbstractChannel) -> AbstractExchange:
        """Assert the direct dead-letter exchange and its queue.

        The dead-letter queue is bound with the consumer queue name as key.
        """
        try:
            dlq_exchange = await channel.declare_exchange(
                name=self._config.dlq_exchange_name,
                type=ExchangeType.DIRECT,
                durable=self._config.durable,
                auto_delete=self._config.auto_delete,
            )
            dlq_queue = await channel.declare_queue(
                name=self._config.dlq_queue_name,
                durable=self._config.durable,
                auto_delete=self._config.auto_delete,
            )
            await dlq_queue.bind(dlq_exchange, routing_key=self._config.queue_name)
        except AMQPError as e:
            raise TopologyError(
                f"Cannot declare dead-letter queue {self._config.dlq_queue_name}: {e}"
            ) from e

        logger.debug(
            f"Declared dead-letter queue {self._config.dlq_queue_name} "
            f"on {self._config.dlq_exchange_name}",
            extra={
                "dlq_exchange_name": self._config.dlq_exchange_name,
                "dlq_queue_name": self._config.dlq_queue_name,
            },
        )
        return dlq_exchange

    async def declare_consumer_queue(
        self,
        channel: AbstractChannel,
        exchange: AbstractExchange,
    ) -> AbstractQueue:
        """Assert the consumer-group queue and bind it with every binding key."""
        try:
            queue = await channel.declare_queue(
                name=self._config.queue_name,
                durable=self._config.durable,
                auto_delete=self._config.auto_delete,
            )
            for binding_key in self._config.binding_keys:
                await queue.bind(exchange, routing_key=binding_key)
        except AMQPError as e:
            raise TopologyError(
                f"Cannot declare queue {self._config.queue_name}: {e}"
            ) from e

        logger.info(
            f"Bound queue {self._config.queue_name} to {self._config.exchange_name} "
            f"with {', '.join(self._config.binding_keys)}",
            extra={
                "queue": self._config.queue_name,
                "exchange": self._config.exchange_name,
                "binding_keys": list(self._config.binding_keys),
            },
        )
        return queue


__all__ = [
    "TopicTopology",
    "routing_key_matches",
]
