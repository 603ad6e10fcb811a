"""Reliable publisher: confirmed publishing with reconnect-with-backoff.

`publish()` returns only after the broker has confirmed the message, and it
never raises for broker faults. Failures come back as a `PublishResult`
whose `failure` names what went wrong; what to do about it is the caller's
policy.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from aio_pika.abc import AbstractChannel, AbstractExchange
from aio_pika.exceptions import (
    AMQPChannelError,
    AMQPConnectionError,
    ChannelInvalidStateError,
    DeliveryError,
)
from opentelemetry import trace
from opentelemetry.propagate import inject
from opentelemetry.trace import Status, StatusCode
from pamqp.commands import Basic
from pydantic import ValidationError

from taskrelay.broker.config import BrokerConfig
from taskrelay.broker.connection import BrokerConnection, Connector
from taskrelay.broker.topology import TopicTopology
from taskrelay.events.envelope import EventEnvelope
from taskrelay.exceptions import BrokerError, BrokerUnavailableError
from taskrelay.observability import (
    ATTR_EVENT_TYPE,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_MESSAGE_ID,
    ATTR_MESSAGING_ROUTING_KEY,
    ATTR_MESSAGING_SYSTEM,
    ATTR_PUBLISH_OUTCOME,
    SpanKindEnum,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)

# Errors after which the send is retried on a fresh connection
TRANSIENT_PUBLISH_ERRORS: tuple[type[BaseException], ...] = (
    AMQPConnectionError,
    AMQPChannelError,
    ChannelInvalidStateError,
    ConnectionError,
)


class PublishFailureKind(Enum):
    """Why a publish did not end with a broker confirm."""

    BROKER_UNAVAILABLE = "broker_unavailable"
    REJECTED = "rejected"
    CONFIRM_TIMEOUT = "confirm_timeout"
    SERIALIZATION = "serialization"


@dataclass(frozen=True)
class PublishResult:
    """Outcome of one publish.

    Attributes:
        routing_key: Routing key the publish was attempted with.
        message_id: Message id of the envelope, None if it could not be built.
        failure: None on success, otherwise the failure kind.
        error: Description of the last error on failure.
        attempts: Sends attempted, across reconnects.
    """

    routing_key: str
    message_id: str | None = None
    failure: PublishFailureKind | None = None
    error: str | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, envelope: EventEnvelope, attempts: int) -> PublishResult:
        return cls(
            routing_key=envelope.routing_key, message_id=envelope.message_id, attempts=attempts
        )

    @classmethod
    def failed(
        cls,
        routing_key: str,
        kind: PublishFailureKind,
        error: BaseException | str | None,
        *,
        message_id: str | None = None,
        attempts: int = 0,
    ) -> PublishResult:
        return cls(
            routing_key=routing_key,
            message_id=message_id,
            failure=kind,
            error=str(error) if error is not None else None,
            attempts=attempts,
        )


@dataclass
class PublisherStats:
    events_published: int = 0
    publish_failures: int = 0
    publish_retries: int = 0
    last_publish_at: datetime | None = None
    last_error_at: datetime | None = None


class ReliablePublisher:
    """
    Publishes envelopes to the topic exchange with publisher confirms.

    The connection is established lazily on first publish and re-established
    transparently after a disconnect. A send that fails on the transport
    marks the connection lost and is retried on a new one, up to
    `config.publish_attempts` sends.

    Args:
        config: Broker configuration
        connection: Supervised connection; one is created when omitted
        connector: Transport factory passed to a created connection
        tracer: Optional tracer, overrides `enable_tracing`
        enable_tracing: Defaults to `config.enable_tracing`

    Example:
        >>> publisher = ReliablePublisher(BrokerConfig())
        >>> result = await publisher.publish(
        ...     "task.created", {"id": "t1", "ownerId": "u1", "title": "Buy milk"}
        ... )
        >>> result.ok
        True
    """

    def __init__(
        self,
        config: BrokerConfig | None = None,
        *,
        connection: BrokerConnection | None = None,
        connector: Connector | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool | None = None,
    ) -> None:
        self._config = config or BrokerConfig()
        self._connection = connection or BrokerConnection(
            self._config, name="publisher", connector=connector
        )
        self._topology = TopicTopology(self._config)
        self._exchange: AbstractExchange | None = None
        self._stats = PublisherStats()
        if enable_tracing is None:
            enable_tracing = self._config.enable_tracing
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._connection.add_topology_hook(self._declare_topology)

    @property
    def config(self) -> BrokerConfig:
        return self._config

    @property
    def connection(self) -> BrokerConnection:
        return self._connection

    @property
    def is_active(self) -> bool:
        return self._connection.is_active

    @property
    def stats(self) -> PublisherStats:
        return self._stats

    async def _declare_topology(self, channel: AbstractChannel) -> None:
        self._exchange = await self._topology.declare_exchange(channel)

    async def start(self, max_attempts: int | None = None) -> None:
        """
        Connect eagerly.

        Raises:
            BrokerUnavailableError: If the connect budget is exhausted. The
                caller may continue degraded; publish connects lazily later.
        """
        await self._connection.connect(max_attempts)

    async def close(self) -> None:
        await self._connection.close()

    async def __aenter__(self) -> ReliablePublisher:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def publish(
        self,
        routing_key: str,
        payload: dict[str, Any],
        *,
        headers: dict[str, Any] | None = None,
        persistent: bool = True,
    ) -> PublishResult:
        """
        Publish a payload under a routing key and wait for the broker confirm.

        A fresh message id is generated for every call.
        """
        try:
            envelope = EventEnvelope(
                routing_key=routing_key,
                payload=payload,
                headers=headers or {},
                persistent=persistent,
            )
        except ValidationError as e:
            return self._record_failure(
                PublishResult.failed(routing_key, PublishFailureKind.SERIALIZATION, e)
            )
        return await self.publish_envelope(envelope)

    async def publish_envelope(self, envelope: EventEnvelope) -> PublishResult:
        """Publish a prepared envelope and wait for the broker confirm."""
        span = self._tracer.start_span(
            "taskrelay.publisher.publish",
            kind=SpanKindEnum.PRODUCER,
            attributes={
                ATTR_MESSAGING_SYSTEM: "rabbitmq",
                ATTR_MESSAGING_DESTINATION: self._config.exchange_name,
                ATTR_MESSAGING_MESSAGE_ID: envelope.message_id,
                ATTR_MESSAGING_ROUTING_KEY: envelope.routing_key,
                ATTR_EVENT_TYPE: envelope.routing_key,
            },
        )
        try:
            if span is not None:
                carrier: dict[str, Any] = {}
                inject(carrier, context=trace.set_span_in_context(span))
                envelope = envelope.with_headers(carrier)

            result = await self._send(envelope)

            if span is not None:
                span.set_attribute(
                    ATTR_PUBLISH_OUTCOME,
                    "success" if result.ok else result.failure.value,  # type: ignore[union-attr]
                )
                if result.ok:
                    span.set_status(Status(StatusCode.OK))
                else:
                    span.set_status(Status(StatusCode.ERROR, result.error))
            return result
        finally:
            if span is not None:
                span.end()

    async def _send(self, envelope: EventEnvelope) -> PublishResult:
        try:
            message = envelope.to_message()
        except (TypeError, ValueError) as e:
            return self._record_failure(
                PublishResult.failed(
                    envelope.routing_key,
                    PublishFailureKind.SERIALIZATION,
                    e,
                    message_id=envelope.message_id,
                )
            )

        last_error: BaseException | None = None
        attempts = 0
        for attempt in range(1, self._config.publish_attempts + 1):
            try:
                channel = await self._connection.acquire()
            except (BrokerUnavailableError, BrokerError) as e:
                last_error = e
                break

            attempts = attempt
            exchange = self._exchange
            try:
                if exchange is None:
                    raise ChannelInvalidStateError("exchange is not declared")
                confirmation = await exchange.publish(
                    message,
                    routing_key=envelope.routing_key,
                    mandatory=False,
                    timeout=self._config.confirm_timeout,
                )
            except TimeoutError as e:
                return self._record_failure(
                    PublishResult.failed(
                        envelope.routing_key,
                        PublishFailureKind.CONFIRM_TIMEOUT,
                        str(e) or "no confirm within timeout",
                        message_id=envelope.message_id,
                        attempts=attempts,
                    )
                )
            except DeliveryError as e:
                return self._record_failure(
                    PublishResult.failed(
                        envelope.routing_key,
                        PublishFailureKind.REJECTED,
                        e,
                        message_id=envelope.message_id,
                        attempts=attempts,
                    )
                )
            except TRANSIENT_PUBLISH_ERRORS as e:
                last_error = e
                await self._connection.mark_lost(channel, e)
                if attempt < self._config.publish_attempts:
                    self._stats.publish_retries += 1
                    logger.info(
                        f"Retrying publish of {envelope.routing_key} on a new connection",
                        extra={
                            "message_id": envelope.message_id,
                            "routing_key": envelope.routing_key,
                            "attempt": attempt,
                            "error": str(e),
                            "error_type": type(e).__name__,
                        },
                    )
                continue

            if isinstance(confirmation, (Basic.Nack, Basic.Reject)):
                return self._record_failure(
                    PublishResult.failed(
                        envelope.routing_key,
                        PublishFailureKind.REJECTED,
                        "broker nacked the message",
                        message_id=envelope.message_id,
                        attempts=attempts,
                    )
                )

            self._stats.events_published += 1
            self._stats.last_publish_at = datetime.now(UTC)
            logger.debug(
                f"Published {envelope.routing_key}",
                extra={
                    "message_id": envelope.message_id,
                    "routing_key": envelope.routing_key,
                    "exchange": self._config.exchange_name,
                    "attempts": attempts,
                },
            )
            return PublishResult.success(envelope, attempts)

        return self._record_failure(
            PublishResult.failed(
                envelope.routing_key,
                PublishFailureKind.BROKER_UNAVAILABLE,
                last_error,
                message_id=envelope.message_id,
                attempts=attempts,
            )
        )

    def _record_failure(self, result: PublishResult) -> PublishResult:
        self._stats.publish_failures += 1
        self._stats.last_error_at = datetime.now(UTC)
        logger.error(
            f"Failed to publish {result.routing_key}: {result.failure.value}",  # type: ignore[union-attr]
            extra={
                "message_id": result.message_id,
                "routing_key": result.routing_key,
                "failure": result.failure.value,  # type: ignore[union-attr]
                "attempts": result.attempts,
                "error": result.error,
            },
        )
        return result


__all__ = [
    "ReliablePublisher",
    "PublishResult",
    "PublishFailureKind",
    "PublisherStats",
    "TRANSIENT_PUBLISH_ERRORS",
]
