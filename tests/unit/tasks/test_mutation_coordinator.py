"""
Tests for TaskMutationCoordinator.

The happy paths run against the in-memory broker with a real publisher;
failure policies use a mocked publisher.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock, PropertyMock

import pytest

from taskrelay.broker import PublishFailureKind, PublishResult, ReliablePublisher
from taskrelay.cache import ReadThroughCache
from taskrelay.exceptions import (
    EventPublishError,
    TaskNotFoundError,
    UnauthenticatedError,
    ValidationFailedError,
)
from taskrelay.identity import VerifiedIdentity
from taskrelay.observability import MockTracer
from taskrelay.serialization import json_loads
from taskrelay.tasks import (
    InMemoryTaskStore,
    PublishFailurePolicy,
    TaskMutationCoordinator,
    TaskStatus,
)
from taskrelay.testing import InMemoryBroker
from tests.fixtures import fast_broker_config


async def bind_tap_queue(broker: InMemoryBroker) -> str:
    connection = await broker.connect()
    channel = await connection.channel()
    exchange = await channel.declare_exchange("task.events", type="topic", durable=True)
    queue = await channel.declare_queue("tap", durable=True)
    await queue.bind(exchange, routing_key="task.*")
    return "tap"


def published(broker: InMemoryBroker, queue: str = "tap") -> list[tuple[str, dict]]:
    return [(m.routing_key, json_loads(m.body)) for m in broker.messages(queue)]


def mock_publisher(ok: bool = True, active: bool = True) -> MagicMock:
    publisher = MagicMock(spec=ReliablePublisher)
    type(publisher).is_active = PropertyMock(return_value=active)
    if ok:
        result = PublishResult(routing_key="task.created", message_id="m1", attempts=1)
    else:
        result = PublishResult.failed(
            "task.created",
            PublishFailureKind.BROKER_UNAVAILABLE,
            ConnectionRefusedError("refused"),
            attempts=3,
        )
    publisher.publish = AsyncMock(return_value=result)
    return publisher


@pytest.fixture
async def publisher(in_memory_broker: InMemoryBroker) -> AsyncGenerator[ReliablePublisher, None]:
    publisher = ReliablePublisher(fast_broker_config(), connector=in_memory_broker.connect)
    await publisher.start()
    yield publisher
    await publisher.close()


@pytest.fixture
async def tap(in_memory_broker: InMemoryBroker) -> str:
    return await bind_tap_queue(in_memory_broker)


@pytest.fixture
def coordinator(
    task_store: InMemoryTaskStore,
    read_cache: ReadThroughCache,
    publisher: ReliablePublisher,
) -> TaskMutationCoordinator:
    return TaskMutationCoordinator(task_store, read_cache, publisher, enable_tracing=False)


class TestCreate:
    async def test_create_publishes_created(
        self, coordinator, alice, in_memory_broker, tap
    ):
        task = await coordinator.create_task(alice, {"title": "Buy milk"})

        assert task.owner_id == "u1"
        assert task.status is TaskStatus.OPEN
        assert published(in_memory_broker) == [
            ("task.created", {"id": task.id, "ownerId": "u1", "title": "Buy milk"})
        ]
        assert coordinator.stats.mutations == 1
        assert coordinator.stats.events_published == 1

    async def test_invalid_input_touches_nothing(
        self, coordinator, alice, task_store, in_memory_broker, tap
    ):
        with pytest.raises(ValidationFailedError) as exc_info:
            await coordinator.create_task(alice, {"title": ""})

        assert "title" in exc_info.value.errors
        assert await task_store.list_for_owner("u1") == []
        assert published(in_memory_broker) == []

    @pytest.mark.parametrize("identity", [None, VerifiedIdentity(subject_id=""),
                                          VerifiedIdentity(subject_id="  ")])
    async def test_requires_identity(self, coordinator, identity):
        with pytest.raises(UnauthenticatedError):
            await coordinator.create_task(identity, {"title": "Buy milk"})

    async def test_owner_comes_from_identity(self, coordinator, alice):
        with pytest.raises(ValidationFailedError):
            await coordinator.create_task(alice, {"title": "x", "ownerId": "u2"})


class TestUpdate:
    async def test_complete_publishes_completed(
        self, coordinator, alice, in_memory_broker, tap
    ):
        task = await coordinator.create_task(alice, {"title": "Buy milk"})

        done = await coordinator.complete_task(alice, task.id)

        assert done.status is TaskStatus.DONE
        assert [key for key, _ in published(in_memory_broker)] == [
            "task.created",
            "task.completed",
        ]

    async def test_reopen_publishes_opened(self, coordinator, alice, in_memory_broker, tap):
        task = await coordinator.create_task(alice, {"title": "Buy milk"})
        await coordinator.complete_task(alice, task.id)

        reopened = await coordinator.reopen_task(alice, task.id)

        assert reopened.status is TaskStatus.OPEN
        assert published(in_memory_broker)[-1] == (
            "task.opened",
            {"id": task.id, "ownerId": "u1", "title": "Buy milk"},
        )

    async def test_update_status_publishes(self, coordinator, alice, in_memory_broker, tap):
        task = await coordinator.create_task(alice, {"title": "Buy milk"})

        await coordinator.update_task(alice, task.id, {"status": "DONE"})
        await coordinator.update_task(alice, task.id, {"status": "OPEN"})

        assert [key for key, _ in published(in_memory_broker)] == [
            "task.created",
            "task.completed",
            "task.opened",
        ]

    async def test_update_title_publishes_nothing(
        self, coordinator, alice, in_memory_broker, tap
    ):
        task = await coordinator.create_task(alice, {"title": "Buy milk"})

        updated = await coordinator.update_task(alice, task.id, {"title": "Buy oat milk"})

        assert updated.title == "Buy oat milk"
        assert [key for key, _ in published(in_memory_broker)] == ["task.created"]
        assert coordinator.stats.mutations == 2

    async def test_cross_owner_is_not_found(
        self, coordinator, alice, bob, task_store, in_memory_broker, tap
    ):
        task = await coordinator.create_task(alice, {"title": "Buy milk"})

        with pytest.raises(TaskNotFoundError):
            await coordinator.complete_task(bob, task.id)

        assert (await task_store.get("u1", task.id)).status is TaskStatus.OPEN
        assert len(published(in_memory_broker)) == 1

    async def test_empty_id_is_not_found(self, coordinator, alice):
        with pytest.raises(TaskNotFoundError):
            await coordinator.update_task(alice, "", {"title": "x"})


class TestDelete:
    async def test_delete_publishes_deleted_with_old_row(
        self, coordinator, alice, task_store, in_memory_broker, tap
    ):
        task = await coordinator.create_task(alice, {"title": "Buy milk"})

        deleted = await coordinator.delete_task(alice, task.id)

        assert deleted == task
        assert await task_store.get("u1", task.id) is None
        assert published(in_memory_broker)[-1] == (
            "task.deleted",
            {"id": task.id, "ownerId": "u1", "title": "Buy milk"},
        )

    async def test_delete_missing(self, coordinator, alice):
        with pytest.raises(TaskNotFoundError):
            await coordinator.delete_task(alice, "missing")


class TestListAndCoherence:
    async def test_create_then_list(self, coordinator, alice):
        task = await coordinator.create_task(alice, {"title": "Buy milk"})

        assert await coordinator.list_tasks(alice) == [task]

    async def test_list_is_cached(self, coordinator, alice, read_cache):
        await coordinator.create_task(alice, {"title": "Buy milk"})

        await coordinator.list_tasks(alice)
        await coordinator.list_tasks(alice)

        assert read_cache.stats.hits == 1

    async def test_every_mutation_invalidates(self, coordinator, alice):
        task = await coordinator.create_task(alice, {"title": "Buy milk"})
        await coordinator.list_tasks(alice)

        await coordinator.complete_task(alice, task.id)
        (listed,) = await coordinator.list_tasks(alice)
        assert listed.status is TaskStatus.DONE

        await coordinator.update_task(alice, task.id, {"title": "Buy oat milk"})
        (listed,) = await coordinator.list_tasks(alice)
        assert listed.title == "Buy oat milk"

        await coordinator.delete_task(alice, task.id)
        assert await coordinator.list_tasks(alice) == []

    async def test_lists_are_per_owner(self, coordinator, alice, bob):
        await coordinator.create_task(alice, {"title": "alice's"})
        await coordinator.list_tasks(bob)

        await coordinator.create_task(bob, {"title": "bob's"})

        assert [t.title for t in await coordinator.list_tasks(alice)] == ["alice's"]
        assert [t.title for t in await coordinator.list_tasks(bob)] == ["bob's"]

    async def test_invalidated_before_publish(self, task_store, alice):
        order: list[str] = []
        cache = MagicMock(spec=ReadThroughCache)
        cache.invalidate = AsyncMock(side_effect=lambda owner: order.append("invalidate"))
        publisher = mock_publisher()

        async def publish(routing_key, payload):
            order.append("publish")
            return PublishResult(routing_key=routing_key, message_id="m1", attempts=1)

        publisher.publish.side_effect = publish
        coordinator = TaskMutationCoordinator(
            task_store, cache, publisher, enable_tracing=False
        )

        await coordinator.create_task(alice, {"title": "Buy milk"})

        assert order == ["invalidate", "publish"]
        cache.invalidate.assert_awaited_once_with("u1")


class TestPublishFailurePolicy:
    async def test_proceed_returns_task(self, task_store, read_cache, alice):
        coordinator = TaskMutationCoordinator(
            task_store, read_cache, mock_publisher(ok=False), enable_tracing=False
        )

        task = await coordinator.create_task(alice, {"title": "Buy milk"})

        assert await task_store.get("u1", task.id) == task
        assert coordinator.stats.publish_failures == 1
        assert coordinator.stats.events_published == 0

    async def test_raise_keeps_write_and_invalidation(self, task_store, read_cache, alice):
        coordinator = TaskMutationCoordinator(
            task_store,
            read_cache,
            mock_publisher(ok=False),
            publish_failure_policy=PublishFailurePolicy.RAISE,
            enable_tracing=False,
        )
        await coordinator.list_tasks(alice)

        with pytest.raises(EventPublishError) as exc_info:
            await coordinator.create_task(alice, {"title": "Buy milk"})

        assert exc_info.value.routing_key == "task.created"
        (task,) = await task_store.list_for_owner("u1")
        assert await coordinator.list_tasks(alice) == [task]

    async def test_raise_never_defers(self, task_store, read_cache, alice):
        publisher = mock_publisher(ok=False, active=False)
        coordinator = TaskMutationCoordinator(
            task_store,
            read_cache,
            publisher,
            publish_failure_policy=PublishFailurePolicy.RAISE,
            enable_tracing=False,
        )

        with pytest.raises(EventPublishError):
            await coordinator.create_task(alice, {"title": "Buy milk"})

        assert coordinator.stats.deferred_publishes == 0
        assert coordinator.pending_publishes == 0

    def test_default_policy(self, coordinator):
        assert coordinator.publish_failure_policy is PublishFailurePolicy.PROCEED


class TestDeferredPublish:
    async def test_defers_when_publisher_inactive(self, task_store, read_cache, alice):
        publisher = mock_publisher(active=False)
        coordinator = TaskMutationCoordinator(
            task_store, read_cache, publisher, enable_tracing=False
        )

        await coordinator.create_task(alice, {"title": "Buy milk"})

        assert coordinator.stats.deferred_publishes == 1
        assert await coordinator.drain(timeout=1.0)
        publisher.publish.assert_awaited_once()
        assert coordinator.stats.events_published == 1
        assert coordinator.pending_publishes == 0

    async def test_no_defer_waits_inline(self, task_store, read_cache, alice):
        publisher = mock_publisher(active=False)
        coordinator = TaskMutationCoordinator(
            task_store,
            read_cache,
            publisher,
            defer_when_unavailable=False,
            enable_tracing=False,
        )

        await coordinator.create_task(alice, {"title": "Buy milk"})

        publisher.publish.assert_awaited_once()
        assert coordinator.stats.deferred_publishes == 0

    async def test_deferred_publish_lands_when_broker_returns(
        self, task_store, read_cache, alice, in_memory_broker
    ):
        tap = await bind_tap_queue(in_memory_broker)
        in_memory_broker.available = False
        publisher = ReliablePublisher(
            fast_broker_config(connect_attempts=50, connect_delay=0.01),
            connector=in_memory_broker.connect,
        )
        coordinator = TaskMutationCoordinator(
            task_store, read_cache, publisher, enable_tracing=False
        )

        task = await coordinator.create_task(alice, {"title": "Buy milk"})
        assert coordinator.pending_publishes == 1
        in_memory_broker.come_back()

        assert await coordinator.drain(timeout=2.0)
        assert published(in_memory_broker, tap) == [
            ("task.created", {"id": task.id, "ownerId": "u1", "title": "Buy milk"})
        ]
        await publisher.close()

    async def test_pending_deferrals_are_capped(
        self, task_store, read_cache, alice, in_memory_broker
    ):
        in_memory_broker.available = False
        publisher = ReliablePublisher(fast_broker_config(), connector=in_memory_broker.connect)
        coordinator = TaskMutationCoordinator(
            task_store,
            read_cache,
            publisher,
            max_pending_publishes=3,
            enable_tracing=False,
        )

        for i in range(5):
            await coordinator.create_task(alice, {"title": f"Task {i}"})

        assert len(await task_store.list_for_owner("u1")) == 5
        assert coordinator.pending_publishes == 3
        assert coordinator.stats.deferred_publishes == 3
        assert coordinator.stats.deferrals_refused == 2
        assert coordinator.stats.publish_failures == 2

        assert await coordinator.drain(timeout=1.0)
        assert coordinator.stats.publish_failures == 5
        await publisher.close()

    async def test_deferred_publishes_share_one_connect_budget(
        self, task_store, read_cache, alice, in_memory_broker
    ):
        in_memory_broker.available = False
        config = fast_broker_config(connect_attempts=3, connect_delay=0.05)
        publisher = ReliablePublisher(config, connector=in_memory_broker.connect)
        coordinator = TaskMutationCoordinator(
            task_store, read_cache, publisher, enable_tracing=False
        )

        for i in range(6):
            await coordinator.create_task(alice, {"title": f"Task {i}"})

        # One budget is 3 * 0.05s; six serial budgets would take about 0.9s
        assert await coordinator.drain(timeout=0.5)
        assert in_memory_broker.connect_attempts == 3
        assert coordinator.stats.publish_failures == 6
        await publisher.close()

    async def test_drain_with_nothing_pending(self, coordinator):
        assert await coordinator.drain() is True

    async def test_crashed_deferred_publish_counted(self, task_store, read_cache, alice):
        publisher = mock_publisher(active=False)
        publisher.publish.side_effect = RuntimeError("bug")
        coordinator = TaskMutationCoordinator(
            task_store, read_cache, publisher, enable_tracing=False
        )

        await coordinator.create_task(alice, {"title": "Buy milk"})
        await coordinator.drain(timeout=1.0)

        assert coordinator.stats.publish_failures == 1


class TestTracing:
    async def test_mutation_and_publish_spans(
        self, task_store, read_cache, alice, mock_tracer: MockTracer
    ):
        coordinator = TaskMutationCoordinator(
            task_store, read_cache, mock_publisher(), tracer=mock_tracer
        )

        task = await coordinator.create_task(alice, {"title": "Buy milk"})
        await coordinator.complete_task(alice, task.id)

        assert mock_tracer.span_names == [
            "taskrelay.tasks.create",
            "taskrelay.tasks.publish",
            "taskrelay.tasks.complete",
            "taskrelay.tasks.publish",
        ]
        _, attributes = mock_tracer.spans[2]
        assert attributes == {
            "taskrelay.operation": "complete",
            "taskrelay.owner.id": "u1",
            "taskrelay.task.id": task.id,
        }

    async def test_update_without_event_has_no_publish_span(
        self, task_store, read_cache, alice, mock_tracer: MockTracer
    ):
        coordinator = TaskMutationCoordinator(
            task_store, read_cache, mock_publisher(), tracer=mock_tracer
        )
        task = await coordinator.create_task(alice, {"title": "Buy milk"})
        mock_tracer.clear()

        await coordinator.update_task(alice, task.id, {"title": "Buy oat milk"})

        assert mock_tracer.span_names == ["taskrelay.tasks.update"]
