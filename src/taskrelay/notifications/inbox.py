"""Owner-scoped read and clear operations on notifications."""

from __future__ import annotations

import logging

from taskrelay.identity import VerifiedIdentity, require_identity
from taskrelay.notifications.models import Notification
from taskrelay.notifications.store import DEFAULT_LIST_LIMIT, NotificationStore

logger = logging.getLogger(__name__)


class NotificationInbox:
    """
    What a signed-in user sees of their notifications.

    Example:
        >>> inbox = NotificationInbox(store)
        >>> latest = await inbox.list_notifications(identity)
        >>> deleted = await inbox.clear_notifications(identity)
    """

    def __init__(self, store: NotificationStore) -> None:
        self._store = store

    async def list_notifications(
        self,
        identity: VerifiedIdentity | None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[Notification]:
        """
        The caller's latest notifications, newest first.

        Raises:
            UnauthenticatedError: No usable identity
            ValueError: If limit is not positive
        """
        owner_id = require_identity(identity).subject_id
        if limit <= 0:
            raise ValueError("limit must be positive")
        return await self._store.list_for_owner(owner_id, limit)

    async def clear_notifications(self, identity: VerifiedIdentity | None) -> int:
        """Delete every notification of the caller and return how many were removed."""
        owner_id = require_identity(identity).subject_id
        deleted = await self._store.clear_for_owner(owner_id)
        logger.info(
            f"Cleared {deleted} notifications for {owner_id}",
            extra={"owner_id": owner_id, "deleted": deleted},
        )
        return deleted


__all__ = ["NotificationInbox"]
