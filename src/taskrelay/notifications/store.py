"""
Notification stores.

Notifications are append-only per owner. Listing is newest first with a
limit; clearing removes every record of an owner and reports how many
went away.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from taskrelay.notifications.models import Notification, NotificationType
from taskrelay.observability import ATTR_OWNER_ID, Tracer, create_tracer
from taskrelay.stores import execute_with_connection

DEFAULT_LIST_LIMIT = 50

_COLUMNS = "id, owner_id, type, message, created_at, source_message_id"


@runtime_checkable
class NotificationStore(Protocol):
    """Protocol for notification persistence."""

    async def initialize(self) -> None:
        ...

    async def add(self, notification: Notification) -> Notification:
        ...

    async def list_for_owner(
        self, owner_id: str, limit: int = DEFAULT_LIST_LIMIT
    ) -> list[Notification]:
        """Newest first, at most `limit` records."""
        ...

    async def clear_for_owner(self, owner_id: str) -> int:
        """Delete all of an owner's notifications and return the count."""
        ...


class InMemoryNotificationStore:
    """In-memory NotificationStore for tests and local runs."""

    def __init__(self, tracer: Tracer | None = None, enable_tracing: bool = True) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._items: list[Notification] = []
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        return None

    async def add(self, notification: Notification) -> Notification:
        async with self._lock:
            self._items.append(notification)
        return notification

    async def list_for_owner(
        self, owner_id: str, limit: int = DEFAULT_LIST_LIMIT
    ) -> list[Notification]:
        with self._tracer.span("taskrelay.notification_store.list", {ATTR_OWNER_ID: owner_id}):
            async with self._lock:
                # Reverse insertion order breaks created_at ties newest-first
                owned = [n for n in reversed(self._items) if n.owner_id == owner_id]
            owned.sort(key=lambda n: n.created_at, reverse=True)
            return owned[:limit]

    async def clear_for_owner(self, owner_id: str) -> int:
        async with self._lock:
            before = len(self._items)
            self._items = [n for n in self._items if n.owner_id != owner_id]
            return before - len(self._items)

    async def count(self) -> int:
        return len(self._items)


class SQLNotificationStore:
    """
    NotificationStore over SQLAlchemy's async engine.

    Example:
        >>> store = SQLNotificationStore(engine)
        >>> await store.initialize()
        >>> await store.add(notification)
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        *,
        table_name: str = "notifications",
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self.conn = conn
        self._table = table_name
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    async def initialize(self) -> None:
        async with execute_with_connection(self.conn) as conn:
            await conn.execute(
                text(f"""
                    CREATE TABLE IF NOT EXISTS {self._table} (
                        id TEXT PRIMARY KEY,
                        owner_id TEXT NOT NULL,
                        type TEXT NOT NULL,
                        message TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        source_message_id TEXT
                    )
                """)  # nosec B608 - table name from trusted config
            )
            await conn.execute(
                text(
                    f"CREATE INDEX IF NOT EXISTS idx_{self._table}_owner "
                    f"ON {self._table} (owner_id, created_at)"
                )
            )

    @staticmethod
    def _row_to_notification(row: Any) -> Notification:
        data = dict(row._mapping)
        return Notification(
            id=data["id"],
            owner_id=data["owner_id"],
            type=NotificationType(data["type"]),
            message=data["message"],
            created_at=datetime.fromisoformat(data["created_at"]),
            source_message_id=data["source_message_id"],
        )

    async def add(self, notification: Notification) -> Notification:
        with self._tracer.span(
            "taskrelay.notification_store.add", {ATTR_OWNER_ID: notification.owner_id}
        ):
            query = text(f"""
                INSERT INTO {self._table} ({_COLUMNS})
                VALUES (:id, :owner_id, :type, :message, :created_at, :source_message_id)
            """)  # nosec B608 - table name from trusted config
            params = {
                "id": notification.id,
                "owner_id": notification.owner_id,
                "type": notification.type.value,
                "message": notification.message,
                "created_at": notification.created_at.isoformat(),
                "source_message_id": notification.source_message_id,
            }
            async with execute_with_connection(self.conn) as conn:
                await conn.execute(query, params)
            return notification

    async def list_for_owner(
        self, owner_id: str, limit: int = DEFAULT_LIST_LIMIT
    ) -> list[Notification]:
        with self._tracer.span("taskrelay.notification_store.list", {ATTR_OWNER_ID: owner_id}):
            query = text(f"""
                SELECT {_COLUMNS} FROM {self._table}
                WHERE owner_id = :owner_id
                ORDER BY created_at DESC
                LIMIT :limit
            """)  # nosec B608 - table name from trusted config
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(query, {"owner_id": owner_id, "limit": limit})
                rows = result.fetchall()
            return [self._row_to_notification(row) for row in rows]

    async def clear_for_owner(self, owner_id: str) -> int:
        with self._tracer.span("taskrelay.notification_store.clear", {ATTR_OWNER_ID: owner_id}):
            query = text(
                f"DELETE FROM {self._table} WHERE owner_id = :owner_id"  # nosec B608
            )
            async with execute_with_connection(self.conn) as conn:
                result = await conn.execute(query, {"owner_id": owner_id})
            return result.rowcount or 0


__all__ = [
    "DEFAULT_LIST_LIMIT",
    "InMemoryNotificationStore",
    "NotificationStore",
    "SQLNotificationStore",
]
