"""
Shared test helpers.

Kept out of conftest.py so test modules can import them directly.
"""

from __future__ import annotations

import asyncio
import subprocess
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock

from aio_pika import DeliveryMode

from taskrelay.broker.config import BrokerConfig, RedeliveryPolicy
from taskrelay.events.envelope import (
    HEADER_RETRY_COUNT,
    HEADER_SCHEMA_VERSION,
    EventEnvelope,
)
from taskrelay.serialization import json_dumpb


def fast_broker_config(**overrides: Any) -> BrokerConfig:
    """BrokerConfig with delays short enough for tests."""
    values: dict[str, Any] = {
        "connect_attempts": 3,
        "connect_delay": 0.01,
        "confirm_timeout": 1.0,
        "retry_base_delay": 0.0,
        "retry_max_delay": 0.0,
        "retry_jitter": 0.0,
        "max_redeliveries": 2,
        "redelivery_policy": RedeliveryPolicy.DEAD_LETTER,
        "shutdown_timeout": 1.0,
        "enable_tracing": False,
        "consumer_name": "test-consumer",
    }
    values.update(overrides)
    return BrokerConfig(**values)


def task_payload(
    task_id: str = "t1", owner_id: str = "u1", title: str | None = "Buy milk"
) -> dict[str, Any]:
    payload: dict[str, Any] = {"id": task_id, "ownerId": owner_id}
    if title is not None:
        payload["title"] = title
    return payload


def make_envelope(routing_key: str = "task.created", **kwargs: Any) -> EventEnvelope:
    kwargs.setdefault("payload", task_payload())
    return EventEnvelope(routing_key=routing_key, **kwargs)


def make_incoming_message(
    routing_key: str = "task.created",
    payload: Any = None,
    *,
    body: bytes | None = None,
    message_id: str | None = "msg-1",
    retry_count: int | None = None,
    headers: dict[str, Any] | None = None,
    message_type: str | None = None,
    exchange: str = "task.events",
) -> MagicMock:
    """MagicMock shaped like an aio-pika incoming message."""
    message = MagicMock()
    message.body = body if body is not None else json_dumpb(
        task_payload() if payload is None else payload
    )
    all_headers: dict[str, Any] = {HEADER_SCHEMA_VERSION: 1}
    if retry_count is not None:
        all_headers[HEADER_RETRY_COUNT] = retry_count
    all_headers.update(headers or {})
    message.headers = all_headers
    message.exchange = exchange
    message.routing_key = routing_key
    message.type = message_type if message_type is not None else routing_key
    message.message_id = message_id
    message.content_type = "application/json"
    message.content_encoding = "utf-8"
    message.delivery_mode = DeliveryMode.PERSISTENT
    message.timestamp = datetime.now(UTC)
    message.ack = AsyncMock()
    message.nack = AsyncMock()
    message.reject = AsyncMock()
    return message


async def wait_until(
    predicate: Callable[[], bool],
    timeout: float = 2.0,
    interval: float = 0.005,
) -> bool:
    """Poll `predicate` until it holds or `timeout` expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


def is_docker_available() -> bool:
    """Check if Docker is available for running containers."""
    try:
        result = subprocess.run(
            ["docker", "info"],
            capture_output=True,
            timeout=5,
        )
        return result.returncode == 0
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError):
        return False


__all__ = [
    "fast_broker_config",
    "is_docker_available",
    "make_envelope",
    "make_incoming_message",
    "task_payload",
    "wait_until",
]
