"""Tests for NotificationInbox."""

import pytest

from taskrelay.exceptions import UnauthenticatedError
from taskrelay.notifications import (
    InMemoryNotificationStore,
    Notification,
    NotificationInbox,
    NotificationType,
)


@pytest.fixture
def inbox(notification_store: InMemoryNotificationStore) -> NotificationInbox:
    return NotificationInbox(notification_store)


async def add(store: InMemoryNotificationStore, owner_id: str, message: str) -> None:
    await store.add(
        Notification(owner_id=owner_id, type=NotificationType.TASK_CREATED, message=message)
    )


class TestNotificationInbox:
    async def test_lists_own_notifications(self, inbox, notification_store, alice):
        await add(notification_store, "u1", "mine")
        await add(notification_store, "u2", "theirs")

        listed = await inbox.list_notifications(alice)

        assert [n.message for n in listed] == ["mine"]

    async def test_default_limit_is_fifty(self, inbox, notification_store, alice):
        for i in range(60):
            await add(notification_store, "u1", str(i))

        assert len(await inbox.list_notifications(alice)) == 50

    @pytest.mark.parametrize("limit", [0, -1])
    async def test_limit_must_be_positive(self, inbox, alice, limit):
        with pytest.raises(ValueError):
            await inbox.list_notifications(alice, limit=limit)

    async def test_clear(self, inbox, notification_store, alice, bob):
        await add(notification_store, "u1", "a")
        await add(notification_store, "u1", "b")
        await add(notification_store, "u2", "c")

        assert await inbox.clear_notifications(alice) == 2
        assert await inbox.list_notifications(alice) == []
        assert len(await inbox.list_notifications(bob)) == 1

    async def test_requires_identity(self, inbox):
        with pytest.raises(UnauthenticatedError):
            await inbox.list_notifications(None)
        with pytest.raises(UnauthenticatedError):
            await inbox.clear_notifications(None)
