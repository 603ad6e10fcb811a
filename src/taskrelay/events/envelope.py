"""
Event envelope: the wire contract shared by publisher and consumer.

An envelope is the unit carried over the broker. It pairs an immutable
routing key (`<entity>.<verb>`) with a JSON object payload and the
delivery metadata the consumer needs for retries and deduplication.

Mapping onto an AMQP message:

    body                 UTF-8 JSON of `payload`
    content_type         application/json
    message_id           `message_id` (UUID4, generated at publish time)
    timestamp            `occurred_at`
    delivery_mode        2 (persistent) unless `persistent` is False
    x-schema-version     `schema_version`
    x-retry-count        `retry_count`
    x-original-routing-key
                         set on retried copies, which travel through the
                         default exchange with the queue name as key
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Self
from uuid import uuid4

from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractIncomingMessage
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from taskrelay.exceptions import EnvelopeDecodeError, NonRetryableMessageError
from taskrelay.serialization import json_dumpb, json_loads

logger = logging.getLogger(__name__)

TASK_EXCHANGE = "task.events"
TASK_BINDING = "task.*"

SCHEMA_VERSION = 1

HEADER_SCHEMA_VERSION = "x-schema-version"
HEADER_RETRY_COUNT = "x-retry-count"
HEADER_ORIGINAL_ROUTING_KEY = "x-original-routing-key"

_RESERVED_HEADERS = frozenset(
    {HEADER_SCHEMA_VERSION, HEADER_RETRY_COUNT, HEADER_ORIGINAL_ROUTING_KEY}
)


class TaskEventType(StrEnum):
    """Routing keys emitted for the task entity."""

    CREATED = "task.created"
    OPENED = "task.opened"
    COMPLETED = "task.completed"
    DELETED = "task.deleted"


def validate_routing_key(routing_key: str) -> str:
    """
    Check a concrete routing key: non-empty dot-separated segments, no wildcards.

    Raises:
        ValueError: If the key is empty, has an empty segment or a wildcard
    """
    if not routing_key:
        raise ValueError("routing key must not be empty")
    for segment in routing_key.split("."):
        if not segment:
            raise ValueError(f"routing key {routing_key!r} has an empty segment")
        if segment in ("*", "#"):
            raise ValueError(f"routing key {routing_key!r} must not contain wildcards")
    return routing_key


def _header_int(headers: dict[str, Any], name: str, default: int) -> int:
    value = headers.get(name)
    if value is None:
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    try:
        return int(str(value))
    except ValueError:
        return default


class EventEnvelope(BaseModel):
    """
    Immutable message envelope.

    Attributes:
        routing_key: `<entity>.<verb>`, chosen at publish time and never rewritten
        payload: Versionless JSON object; consumers ignore unknown fields
        message_id: UUID4 string, a dedup and debugging aid only
        persistent: Request durable (delivery mode 2) storage
        schema_version: Envelope contract version
        retry_count: Consumer-side redelivery counter
        occurred_at: When the envelope was created (UTC)
        headers: Extra headers such as trace context

    Example:
        >>> envelope = EventEnvelope(
        ...     routing_key="task.created",
        ...     payload={"id": "t1", "ownerId": "u1", "title": "Buy milk"},
        ... )
        >>> message = envelope.to_message()
    """

    model_config = ConfigDict(frozen=True)

    routing_key: str
    payload: dict[str, Any] = Field(default_factory=dict)
    message_id: str = Field(default_factory=lambda: str(uuid4()))
    persistent: bool = True
    schema_version: int = Field(default=SCHEMA_VERSION, ge=1)
    retry_count: int = Field(default=0, ge=0)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    headers: dict[str, Any] = Field(default_factory=dict)

    @field_validator("routing_key")
    @classmethod
    def _check_routing_key(cls, value: str) -> str:
        return validate_routing_key(value)

    @property
    def entity(self) -> str:
        """First routing key segment (e.g. 'task')."""
        return self.routing_key.split(".", 1)[0]

    def with_retry(self, retry_count: int) -> Self:
        """Copy of this envelope carrying a new retry counter."""
        return self.model_copy(update={"retry_count": retry_count})

    def with_headers(self, extra: dict[str, Any]) -> Self:
        """Copy of this envelope with additional headers merged in."""
        return self.model_copy(update={"headers": {**self.headers, **extra}})

    def amqp_headers(self) -> dict[str, Any]:
        headers: dict[str, Any] = dict(self.headers)
        headers[HEADER_SCHEMA_VERSION] = self.schema_version
        headers[HEADER_RETRY_COUNT] = self.retry_count
        if self.retry_count > 0:
            headers[HEADER_ORIGINAL_ROUTING_KEY] = self.routing_key
        return headers

    def to_message(self) -> Message:
        """Build the aio-pika message for this envelope."""
        return Message(
            body=json_dumpb(self.payload),
            content_type="application/json",
            content_encoding="utf-8",
            delivery_mode=(
                DeliveryMode.PERSISTENT if self.persistent else DeliveryMode.NOT_PERSISTENT
            ),
            message_id=self.message_id,
            timestamp=self.occurred_at,
            type=self.routing_key,
            headers=self.amqp_headers(),
        )

    @classmethod
    def from_message(cls, message: AbstractIncomingMessage) -> Self:
        """
        Decode an incoming delivery.

        Deliveries from a named exchange keep their delivery routing key.
        Retried copies arrive through the default exchange with the queue
        name as routing key; only for those is the original key restored
        from `x-original-routing-key` or the message `type` property.

        Raises:
            EnvelopeDecodeError: If the body is not a JSON object or the
                routing key cannot be recovered
        """
        headers = dict(message.headers or {})
        try:
            payload = json_loads(message.body) if message.body else {}
        except (ValueError, UnicodeDecodeError) as e:
            raise EnvelopeDecodeError(message.message_id, f"invalid JSON body: {e}") from e
        if not isinstance(payload, dict):
            raise EnvelopeDecodeError(
                message.message_id,
                f"body must be a JSON object, got {type(payload).__name__}",
            )

        routing_key = message.routing_key or ""
        if not message.exchange:
            original = headers.get(HEADER_ORIGINAL_ROUTING_KEY) or message.type
            if isinstance(original, bytes):
                original = original.decode("utf-8")
            routing_key = original or routing_key

        timestamp = message.timestamp
        if timestamp is not None and timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)

        try:
            return cls(
                routing_key=str(routing_key),
                payload=payload,
                message_id=message.message_id or str(uuid4()),
                persistent=message.delivery_mode == DeliveryMode.PERSISTENT,
                schema_version=_header_int(headers, HEADER_SCHEMA_VERSION, SCHEMA_VERSION),
                retry_count=max(0, _header_int(headers, HEADER_RETRY_COUNT, 0)),
                occurred_at=timestamp or datetime.now(UTC),
                headers={k: v for k, v in headers.items() if k not in _RESERVED_HEADERS},
            )
        except ValidationError as e:
            raise EnvelopeDecodeError(message.message_id, str(e)) from e


class TaskEventPayload(BaseModel):
    """
    Payload of every task lifecycle event: `{"id", "ownerId", "title"}`.

    Unknown fields are ignored so producers can add fields without
    breaking older consumers.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    id: str = Field(min_length=1)
    owner_id: str = Field(alias="ownerId", min_length=1)
    title: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def from_envelope(cls, envelope: EventEnvelope) -> Self:
        """
        Parse the payload of a task envelope.

        Raises:
            NonRetryableMessageError: If `id` or `ownerId` is missing
        """
        try:
            return cls.model_validate(envelope.payload)
        except ValidationError as e:
            raise NonRetryableMessageError(
                f"Invalid payload for {envelope.routing_key} ({envelope.message_id}): {e}"
            ) from e


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
