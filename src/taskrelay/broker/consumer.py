"""Bounded consumer: fixed in-flight credit with explicit ack, retry and dead-lettering.

Each delivery is decoded into an `EventEnvelope` and handed to one
callback. At most `prefetch_count` deliveries are unacknowledged at the
broker, and at most as many callbacks run at once.

On callback failure the configured `RedeliveryPolicy` applies:

- REQUEUE_FOREVER: `nack(requeue=True)`, immediately and without limit.
- DEAD_LETTER: wait an exponential backoff, republish a copy with
  `x-retry-count + 1` directly to this group's queue and ack the original.
  Once `max_redeliveries` retries are spent the delivery goes to the
  dead-letter exchange with failure metadata headers.

Non-retryable failures (undecodable bodies, `NonRetryableMessageError`)
skip the retries and are dead-lettered at once.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from aio_pika import DeliveryMode, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
)
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError
from opentelemetry.propagate import extract
from opentelemetry.trace import Status, StatusCode

from taskrelay.broker.config import BrokerConfig, RedeliveryPolicy
from taskrelay.broker.connection import BrokerConnection, Connector
from taskrelay.broker.topology import TopicTopology
from taskrelay.events.envelope import (
    HEADER_ORIGINAL_ROUTING_KEY,
    HEADER_RETRY_COUNT,
    EventEnvelope,
)
from taskrelay.exceptions import EnvelopeDecodeError, NonRetryableMessageError
from taskrelay.observability import (
    ATTR_EVENT_TYPE,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_MESSAGE_ID,
    ATTR_MESSAGING_ROUTING_KEY,
    ATTR_MESSAGING_SYSTEM,
    ATTR_RETRY_COUNT,
    SpanKindEnum,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)

MessageCallback = Callable[[EventEnvelope], Awaitable[None]]

_SETTLE_ERRORS: tuple[type[BaseException], ...] = (
    AMQPError,
    ChannelInvalidStateError,
    ConnectionError,
)


@dataclass
class ConsumerStats:
    """Counters for one bounded consumer.

    Attributes:
        messages_received: Deliveries handed to the consumer.
        messages_acked: Deliveries acknowledged after a successful callback.
        messages_requeued: Deliveries nacked back onto the queue.
        messages_retried: Deliveries republished with an incremented retry count.
        messages_dead_lettered: Deliveries moved to the dead-letter queue.
        messages_rejected: Deliveries discarded because dead-lettering is off.
        handler_errors: Callback invocations that raised.
        max_in_flight: Highest number of concurrently running callbacks seen.
    """

    messages_received: int = 0
    messages_acked: int = 0
    messages_requeued: int = 0
    messages_retried: int = 0
    messages_dead_lettered: int = 0
    messages_rejected: int = 0
    handler_errors: int = 0
    max_in_flight: int = 0
    last_consume_at: datetime | None = None
    last_error_at: datetime | None = None


class BoundedConsumer:
    """
    Consumes one consumer-group queue with bounded concurrency.

    Args:
        callback: `async callback(envelope)`; returning means success
        config: Broker configuration (queue, prefetch, redelivery policy)
        connection: Supervised connection; one is created when omitted
        connector: Transport factory passed to a created connection
        tracer: Optional tracer, overrides `enable_tracing`
        enable_tracing: Defaults to `config.enable_tracing`

    Example:
        >>> consumer = BoundedConsumer(processor.process, BrokerConfig())
        >>> await consumer.start()
        >>> ...
        >>> await consumer.stop()
    """

    def __init__(
        self,
        callback: MessageCallback,
        config: BrokerConfig | None = None,
        *,
        connection: BrokerConnection | None = None,
        connector: Connector | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool | None = None,
    ) -> None:
        self._callback = callback
        self._config = config or BrokerConfig()
        self._connection = connection or BrokerConnection(
            self._config, name="consumer", connector=connector
        )
        self._topology = TopicTopology(self._config)
        if enable_tracing is None:
            enable_tracing = self._config.enable_tracing
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

        self._credit = asyncio.Semaphore(self._config.prefetch_count)
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()

        self._queue: AbstractQueue | None = None
        self._dlq_exchange: AbstractExchange | None = None
        self._retry_exchange: AbstractExchange | None = None
        self._consumer_tag: str | None = None
        self._consume_channel: AbstractChannel | None = None
        self._wants_consuming = False
        self._stats = ConsumerStats()

        self._connection.add_topology_hook(self._declare_topology)

    @property
    def config(self) -> BrokerConfig:
        return self._config

    @property
    def connection(self) -> BrokerConnection:
        return self._connection

    @property
    def stats(self) -> ConsumerStats:
        return self._stats

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def is_consuming(self) -> bool:
        return (
            self._wants_consuming
            and self._consumer_tag is not None
            and self._connection.is_active
        )

    async def _declare_topology(self, channel: AbstractChannel) -> None:
        await channel.set_qos(prefetch_count=self._config.prefetch_count)
        exchange = await self._topology.declare_exchange(channel)
        if self._config.enable_dlq:
            self._dlq_exchange = await self._topology.declare_dead_letter(channel)
        self._queue = await self._topology.declare_consumer_queue(channel, exchange)
        self._retry_exchange = channel.default_exchange
        if self._wants_consuming:
            await self._ensure_consuming(channel)

    async def _ensure_consuming(self, channel: AbstractChannel) -> None:
        # A robust channel restores its own consumers after reconnect
        if channel is self._consume_channel or self._queue is None:
            return
        self._consumer_tag = await self._queue.consume(
            self._on_message,
            consumer_tag=self._config.consumer_name,
        )
        self._consume_channel = channel
        logger.info(
            f"Consuming from {self._config.queue_name}",
            extra={
                "queue": self._config.queue_name,
                "consumer_name": self._config.consumer_name,
                "prefetch_count": self._config.prefetch_count,
                "redelivery_policy": self._config.redelivery_policy.value,
            },
        )

    async def start(self, max_attempts: int | None = None, *, forever: bool = False) -> None:
        """
        Connect, assert topology and start consuming.

        Raises:
            BrokerUnavailableError: If the connect budget is exhausted
        """
        self._wants_consuming = True
        channel = await self._connection.connect(max_attempts, forever=forever)
        await self._ensure_consuming(channel)

    async def stop(self, timeout: float | None = None) -> None:
        """
        Stop taking deliveries, drain in-flight callbacks and close.

        Deliveries still unacknowledged when the timeout expires are
        redelivered by the broker once the connection closes.
        """
        timeout = self._config.shutdown_timeout if timeout is None else timeout
        self._wants_consuming = False

        if self._queue is not None and self._consumer_tag is not None:
            try:
                await self._queue.cancel(self._consumer_tag)
            except _SETTLE_ERRORS as e:
                logger.warning(
                    f"Failed to cancel consumer {self._consumer_tag}: {e}",
                    extra={"queue": self._config.queue_name, "error": str(e)},
                )
        self._consumer_tag = None
        self._consume_channel = None

        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning(
                f"Consumer stopped with {self._in_flight} deliveries in flight",
                extra={
                    "queue": self._config.queue_name,
                    "in_flight": self._in_flight,
                    "timeout": timeout,
                },
            )

        await self._connection.close()
        logger.info(
            "Consumer stopped",
            extra={
                "queue": self._config.queue_name,
                "messages_received": self._stats.messages_received,
                "messages_acked": self._stats.messages_acked,
                "messages_dead_lettered": self._stats.messages_dead_lettered,
            },
        )

    async def _on_message(self, message: AbstractIncomingMessage) -> None:
        async with self._credit:
            self._in_flight += 1
            self._stats.max_in_flight = max(self._stats.max_in_flight, self._in_flight)
            self._idle.clear()
            try:
                await self._process_message(message)
            finally:
                self._in_flight -= 1
                if self._in_flight == 0:
                    self._idle.set()

    async def _process_message(self, message: AbstractIncomingMessage) -> None:
        self._stats.messages_received += 1
        self._stats.last_consume_at = datetime.now(UTC)

        try:
            envelope = EventEnvelope.from_message(message)
        except EnvelopeDecodeError as e:
            self._stats.handler_errors += 1
            logger.error(
                f"Dropping undecodable message {message.message_id}: {e}",
                extra={
                    "message_id": message.message_id,
                    "routing_key": message.routing_key,
                    "error": str(e),
                },
            )
            await self._dead_letter(message, message.routing_key or "", e, retry_count=0)
            return

        span = self._tracer.start_span(
            "taskrelay.consumer.process",
            kind=SpanKindEnum.CONSUMER,
            attributes={
                ATTR_MESSAGING_SYSTEM: "rabbitmq",
                ATTR_MESSAGING_DESTINATION: self._config.queue_name,
                ATTR_MESSAGING_MESSAGE_ID: envelope.message_id,
                ATTR_MESSAGING_ROUTING_KEY: envelope.routing_key,
                ATTR_EVENT_TYPE: envelope.routing_key,
                ATTR_RETRY_COUNT: envelope.retry_count,
            },
            context=extract(envelope.headers) if self._tracer.enabled else None,
        )
        try:
            await self._callback(envelope)
        except Exception as e:
            self._stats.handler_errors += 1
            self._stats.last_error_at = datetime.now(UTC)
            if span is not None:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                span.record_exception(e)
            logger.error(
                f"Failed to process {envelope.routing_key}: {e}",
                exc_info=True,
                extra={
                    "message_id": envelope.message_id,
                    "routing_key": envelope.routing_key,
                    "retry_count": envelope.retry_count,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            await self._handle_failure(message, envelope, e)
        else:
            if span is not None:
                span.set_status(Status(StatusCode.OK))
            if await self._settle(message.ack(), message):
                self._stats.messages_acked += 1
        finally:
            if span is not None:
                span.end()

    async def _handle_failure(
        self,
        message: AbstractIncomingMessage,
        envelope: EventEnvelope,
        error: Exception,
    ) -> None:
        if isinstance(error, NonRetryableMessageError):
            await self._dead_letter(message, envelope.routing_key, error, envelope.retry_count)
            return

        if self._config.redelivery_policy is RedeliveryPolicy.REQUEUE_FOREVER:
            if await self._settle(message.nack(requeue=True), message):
                self._stats.messages_requeued += 1
            return

        if envelope.retry_count >= self._config.max_redeliveries:
            await self._dead_letter(message, envelope.routing_key, error, envelope.retry_count)
            return

        delay = self._calculate_retry_delay(envelope.retry_count)
        logger.info(
            f"Scheduling retry {envelope.retry_count + 1}/{self._config.max_redeliveries} "
            f"for {envelope.routing_key} after {delay:.2f}s",
            extra={
                "message_id": envelope.message_id,
                "routing_key": envelope.routing_key,
                "retry_count": envelope.retry_count,
                "delay_seconds": delay,
            },
        )
        if delay > 0:
            await asyncio.sleep(delay)

        try:
            await self._republish_for_retry(envelope)
        except Exception as e:
            logger.warning(
                f"Retry republish failed, requeueing {envelope.message_id}: {e}",
                extra={
                    "message_id": envelope.message_id,
                    "routing_key": envelope.routing_key,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            if await self._settle(message.nack(requeue=True), message):
                self._stats.messages_requeued += 1
            return

        if await self._settle(message.ack(), message):
            self._stats.messages_retried += 1

    def _calculate_retry_delay(self, retry_count: int) -> float:
        """Exponential backoff `base * 2**n`, capped, with symmetric jitter."""
        delay: float = self._config.retry_base_delay * (2**retry_count)
        delay = min(delay, self._config.retry_max_delay)
        if self._config.retry_jitter > 0:
            jitter_range = delay * self._config.retry_jitter
            delay = max(0.0, delay + random.uniform(-jitter_range, jitter_range))  # nosec B311
        return delay

    async def _republish_for_retry(self, envelope: EventEnvelope) -> None:
        # Straight to our own queue so other consumer groups see no duplicate
        if self._retry_exchange is None:
            raise ChannelInvalidStateError("retry exchange is not available")
        retry_message = envelope.with_retry(envelope.retry_count + 1).to_message()
        await self._retry_exchange.publish(retry_message, routing_key=self._config.queue_name)

    async def _dead_letter(
        self,
        message: AbstractIncomingMessage,
        routing_key: str,
        error: Exception,
        retry_count: int,
    ) -> None:
        if not self._config.enable_dlq or self._dlq_exchange is None:
            if await self._settle(message.reject(requeue=False), message):
                self._stats.messages_rejected += 1
            logger.error(
                f"Discarded failed message {message.message_id}, dead-lettering is disabled",
                extra={
                    "message_id": message.message_id,
                    "routing_key": routing_key,
                    "retry_count": retry_count,
                    "error": str(error),
                },
            )
            return

        headers: dict[str, Any] = dict(message.headers or {})
        headers[HEADER_RETRY_COUNT] = retry_count
        headers[HEADER_ORIGINAL_ROUTING_KEY] = routing_key
        headers["x-dlq-reason"] = str(error)
        headers["x-dlq-error-type"] = type(error).__name__
        headers["x-dlq-retry-count"] = retry_count
        headers["x-dlq-timestamp"] = datetime.now(UTC).isoformat()

        dlq_message = Message(
            body=message.body,
            content_type=message.content_type,
            content_encoding=message.content_encoding,
            delivery_mode=DeliveryMode.PERSISTENT,
            message_id=message.message_id,
            timestamp=message.timestamp,
            type=message.type,
            headers=headers,
        )
        try:
            await self._dlq_exchange.publish(dlq_message, routing_key=self._config.queue_name)
        except Exception as e:
            logger.warning(
                f"Dead-letter publish failed, requeueing {message.message_id}: {e}",
                extra={"message_id": message.message_id, "error": str(e)},
            )
            if await self._settle(message.nack(requeue=True), message):
                self._stats.messages_requeued += 1
            return

        if await self._settle(message.ack(), message):
            self._stats.messages_dead_lettered += 1
        logger.warning(
            f"Sent message to dead-letter queue after {retry_count} retries: {routing_key}",
            extra={
                "message_id": message.message_id,
                "routing_key": routing_key,
                "retry_count": retry_count,
                "error": str(error),
                "error_type": type(error).__name__,
                "dlq_queue": self._config.dlq_queue_name,
            },
        )

    async def _settle(
        self,
        operation: Awaitable[None],
        message: AbstractIncomingMessage,
    ) -> bool:
        # The broker redelivers anything left unsettled by a dead channel
        try:
            await operation
        except _SETTLE_ERRORS as e:
            logger.warning(
                f"Could not settle message {message.message_id}: {e}",
                extra={
                    "message_id": message.message_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return False
        return True


__all__ = [
    "BoundedConsumer",
    "ConsumerStats",
    "MessageCallback",
]
