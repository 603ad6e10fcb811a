"""
Shared pytest fixtures for the taskrelay tests.

This module provides:
- Broker fixtures (in_memory_broker, broker_config)
- Cache fixtures (memory_backend, read_cache)
- Store fixtures (task_store, notification_store, sqlite_engine)
- Identity fixtures (alice, bob)
- Tracing fixtures (mock_tracer)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from taskrelay.broker.config import BrokerConfig
from taskrelay.cache import CacheConfig, InMemoryCacheBackend, ReadThroughCache
from taskrelay.identity import VerifiedIdentity
from taskrelay.notifications import InMemoryNotificationStore
from taskrelay.observability import MockTracer
from taskrelay.tasks import InMemoryTaskStore
from taskrelay.testing import InMemoryBroker
from tests.fixtures import fast_broker_config

# ============================================================================
# Broker Fixtures
# ============================================================================


@pytest.fixture
def in_memory_broker() -> InMemoryBroker:
    """Fresh in-process AMQP broker."""
    return InMemoryBroker()


@pytest.fixture
def broker_config() -> BrokerConfig:
    """BrokerConfig with millisecond delays and no tracing."""
    return fast_broker_config()


# ============================================================================
# Cache Fixtures
# ============================================================================


@pytest.fixture
def memory_backend() -> InMemoryCacheBackend:
    return InMemoryCacheBackend()


@pytest.fixture
def read_cache(memory_backend: InMemoryCacheBackend) -> ReadThroughCache:
    return ReadThroughCache(memory_backend, CacheConfig(enable_tracing=False))


# ============================================================================
# Store Fixtures
# ============================================================================


@pytest.fixture
def task_store() -> InMemoryTaskStore:
    return InMemoryTaskStore(enable_tracing=False)


@pytest.fixture
def notification_store() -> InMemoryNotificationStore:
    return InMemoryNotificationStore(enable_tracing=False)


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine through aiosqlite, disposed after the test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'taskrelay.db'}")
    yield engine
    await engine.dispose()


# ============================================================================
# Identity Fixtures
# ============================================================================


@pytest.fixture
def alice() -> VerifiedIdentity:
    return VerifiedIdentity(subject_id="u1")


@pytest.fixture
def bob() -> VerifiedIdentity:
    return VerifiedIdentity(subject_id="u2")


# ============================================================================
# Tracing Fixtures
# ============================================================================


@pytest.fixture
def mock_tracer() -> MockTracer:
    return MockTracer()
