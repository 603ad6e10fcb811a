"""
Shared pytest fixtures for integration tests.

This module provides RabbitMQ and Redis containers through testcontainers.
If testcontainers or Docker is not available, tests that need them are
automatically skipped. The in-memory end-to-end tests need neither.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Generator
from typing import Any

import pytest
import pytest_asyncio

from taskrelay.cache import RedisCacheBackend
from tests.fixtures import is_docker_available

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for integration tests."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (may require docker)"
    )
    config.addinivalue_line("markers", "redis: marks tests that require Redis")
    config.addinivalue_line("markers", "rabbitmq: marks tests that require RabbitMQ")
    config.addinivalue_line("markers", "e2e: marks tests as end-to-end integration tests")


# ============================================================================
# Testcontainers Detection
# ============================================================================

TESTCONTAINERS_AVAILABLE = False

try:
    from testcontainers.core.container import DockerContainer
    from testcontainers.core.waiting_utils import wait_for_logs
    from testcontainers.redis import RedisContainer

    TESTCONTAINERS_AVAILABLE = True
except ImportError:
    DockerContainer = None  # type: ignore[assignment, misc]
    RedisContainer = None  # type: ignore[assignment, misc]

DOCKER_AVAILABLE = is_docker_available()


# ============================================================================
# RabbitMQ
# ============================================================================


@pytest.fixture(scope="session")
def rabbitmq_container() -> Generator[Any, None, None]:
    """
    Provide a RabbitMQ container shared across the session.
    """
    if not TESTCONTAINERS_AVAILABLE or not DOCKER_AVAILABLE:
        pytest.skip("RabbitMQ testcontainer not available")

    container = DockerContainer("rabbitmq:3-management")
    container.with_exposed_ports(5672, 15672)
    container.with_env("RABBITMQ_DEFAULT_USER", "guest")
    container.with_env("RABBITMQ_DEFAULT_PASS", "guest")
    container.start()

    wait_for_logs(container, "started TCP listener on", timeout=60)

    yield container

    container.stop()


@pytest.fixture(scope="session")
def rabbitmq_connection_url(rabbitmq_container: Any) -> str:
    host = rabbitmq_container.get_container_host_ip()
    port = rabbitmq_container.get_exposed_port(5672)
    return f"amqp://guest:guest@{host}:{port}/"


# ============================================================================
# Redis
# ============================================================================


@pytest.fixture(scope="session")
def redis_container() -> Generator[Any, None, None]:
    """
    Provide a Redis container shared across the session.
    """
    if not TESTCONTAINERS_AVAILABLE or not DOCKER_AVAILABLE:
        pytest.skip("Redis testcontainer not available")

    container = RedisContainer("redis:7")
    container.start()

    yield container

    container.stop()


@pytest.fixture(scope="session")
def redis_connection_url(redis_container: Any) -> str:
    host = redis_container.get_container_host_ip()
    port = redis_container.get_exposed_port(6379)
    return f"redis://{host}:{port}/0"


@pytest_asyncio.fixture
async def redis_backend(redis_connection_url: str) -> AsyncGenerator[RedisCacheBackend, None]:
    """RedisCacheBackend on a flushed database, closed after the test."""
    backend = RedisCacheBackend.from_url(redis_connection_url)
    await backend.client.flushdb()
    yield backend
    await backend.client.flushdb()
    await backend.close()
