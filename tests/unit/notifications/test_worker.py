"""Tests for NotificationWorker against the in-memory broker."""

from __future__ import annotations

import pytest

from taskrelay.broker import ReliablePublisher
from taskrelay.exceptions import BrokerUnavailableError
from taskrelay.notifications import InMemoryNotificationStore, NotificationWorker
from taskrelay.testing import InMemoryBroker
from tests.fixtures import fast_broker_config, task_payload, wait_until


class TestNotificationWorker:
    async def test_consumes_published_events(
        self, in_memory_broker: InMemoryBroker, notification_store: InMemoryNotificationStore
    ):
        worker = NotificationWorker(
            notification_store, fast_broker_config(), connector=in_memory_broker.connect
        )
        await worker.start()
        assert not worker.is_degraded

        async with ReliablePublisher(
            fast_broker_config(), connector=in_memory_broker.connect
        ) as publisher:
            result = await publisher.publish("task.created", task_payload())
        assert result.ok

        await in_memory_broker.settle()
        (notification,) = await notification_store.list_for_owner("u1")
        assert notification.message == "Task created: Buy milk"
        assert notification.source_message_id == result.message_id
        assert worker.consumer.stats.messages_acked == 1
        await worker.stop()

    async def test_strict_start_raises(
        self, in_memory_broker: InMemoryBroker, notification_store: InMemoryNotificationStore
    ):
        in_memory_broker.available = False
        worker = NotificationWorker(
            notification_store, fast_broker_config(), connector=in_memory_broker.connect
        )

        with pytest.raises(BrokerUnavailableError):
            await worker.start(degraded_ok=False)

        assert not worker.is_degraded
        await worker.stop()

    async def test_degraded_start_connects_later(
        self, in_memory_broker: InMemoryBroker, notification_store: InMemoryNotificationStore
    ):
        in_memory_broker.available = False
        worker = NotificationWorker(
            notification_store, fast_broker_config(), connector=in_memory_broker.connect
        )

        await worker.start(max_attempts=1)
        assert worker.is_degraded

        in_memory_broker.come_back()
        assert await wait_until(lambda: worker.consumer.is_consuming)
        assert await wait_until(lambda: not worker.is_degraded)
        await worker.stop()

    async def test_stop_while_degraded(
        self, in_memory_broker: InMemoryBroker, notification_store: InMemoryNotificationStore
    ):
        in_memory_broker.available = False
        worker = NotificationWorker(
            notification_store, fast_broker_config(), connector=in_memory_broker.connect
        )
        await worker.start(max_attempts=1)

        await worker.stop()

        assert not worker.is_degraded
        assert not worker.consumer.is_consuming

    async def test_context_manager(
        self, in_memory_broker: InMemoryBroker, notification_store: InMemoryNotificationStore
    ):
        async with NotificationWorker(
            notification_store, fast_broker_config(), connector=in_memory_broker.connect
        ) as worker:
            assert worker.consumer.is_consuming

        assert in_memory_broker.consumer_count("notifications.q") == 0
