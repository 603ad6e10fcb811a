"""
Task stores: the durable source of truth for tasks.

Every operation is scoped by `(owner_id, task_id)`. A task owned by someone
else is indistinguishable from a missing one, which keeps cross-owner
access a plain not-found.

SQL adaptations (`SQLTaskStore`):
- ids are TEXT (UUID4, assigned by the store)
- datetimes are TEXT (ISO 8601, UTC, assigned by the store)
- update and delete use RETURNING so the row comes back atomically
  (SQLite 3.35+, PostgreSQL)
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from taskrelay.observability import (
    ATTR_OPERATION,
    ATTR_OWNER_ID,
    ATTR_TASK_ID,
    Tracer,
    create_tracer,
)
from taskrelay.stores import execute_with_connection
from taskrelay.tasks.models import Task, TaskCreate, TaskStatus

_COLUMNS = "id, title, description, status, owner_id, created_at, updated_at"

# Columns an update may touch; anything else is ignored
_UPDATABLE = ("title", "description", "status")


@runtime_checkable
class TaskStore(Protocol):
    """Protocol for task persistence."""

    async def initialize(self) -> None:
        """Create backing tables if needed."""
        ...

    async def create(self, owner_id: str, data: TaskCreate) -> Task:
        """Insert a new OPEN task and return it."""
        ...

    async def get(self, owner_id: str, task_id: str) -> Task | None:
        ...

    async def list_for_owner(self, owner_id: str) -> list[Task]:
        """All tasks of an owner, newest first."""
        ...

    async def update(self, owner_id: str, task_id: str, changes: dict[str, Any]) -> Task | None:
        """
        Apply `changes` and return the updated row.

        Returns:
            The new row, or None if no task matched (owner, id)
        """
        ...

    async def delete(self, owner_id: str, task_id: str) -> Task | None:
        """
        Delete a task.

        Returns:
            The deleted row, or None if no task matched (owner, id)
        """
        ...


def _now() -> datetime:
    return datetime.now(UTC)


class InMemoryTaskStore:
    """
    In-memory TaskStore for tests and local runs.

    Example:
        >>> store = InMemoryTaskStore()
        >>> task = await store.create("u1", TaskCreate(title="Buy milk"))
    """

    def __init__(self, tracer: Tracer | None = None, enable_tracing: bool = True) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._tasks: dict[str, Task] = {}
        self._order: dict[str, int] = {}
        self._sequence = 0
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        return None

    async def create(self, owner_id: str, data: TaskCreate) -> Task:
        with self._tracer.span(
            "taskrelay.task_store.create",
            {ATTR_OWNER_ID: owner_id, ATTR_OPERATION: "create"},
        ):
            now = _now()
            task = Task(
                id=str(uuid4()),
                title=data.title,
                description=data.description,
                status=TaskStatus.OPEN,
                owner_id=owner_id,
                created_at=now,
                updated_at=now,
            )
            async with self._lock:
                self._sequence += 1
                self._tasks[task.id] = task
                self._order[task.id] = self._sequence
            return task

    async def get(self, owner_id: str, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        if task is None or task.owner_id != owner_id:
            return None
        return task

    async def list_for_owner(self, owner_id: str) -> list[Task]:
        with self._tracer.span("taskrelay.task_store.list", {ATTR_OWNER_ID: owner_id}):
            async with self._lock:
                owned = [t for t in self._tasks.values() if t.owner_id == owner_id]
                return sorted(
                    owned,
                    key=lambda t: (t.created_at, self._order[t.id]),
                    reverse=True,
                )

    async def update(self, owner_id: str, task_id: str, changes: dict[str, Any]) -> Task | None:
        with self._tracer.span(
            "taskrelay.task_store.update",
            {ATTR_OWNER_ID: owner_id, ATTR_TASK_ID: task_id, ATTR_OPERATION: "update"},
        ):
            async with self._lock:
                current = self._tasks.get(task_id)
                if current is None or current.owner_id != owner_id:
                    return None
                applied = {k: v for k, v in changes.items() if k in _UPDATABLE}
                updated = current.model_copy(update={**applied, "updated_at": _now()})
                self._tasks[task_id] = updated
                return updated

    async def delete(self, owner_id: str, task_id: str) -> Task | None:
        with self._tracer.span(
            "taskrelay.task_store.delete",
            {ATTR_OWNER_ID: owner_id, ATTR_TASK_ID: task_id, ATTR_OPERATION: "delete"},
        ):
            async with self._lock:
                current = self._tasks.get(task_id)
                if current is None or current.owner_id != owner_id:
                    return None
                del self._tasks[task_id]
                self._order.pop(task_id, None)
                return current

    async def clear(self) -> None:
        async with self._lock:
            self._tasks.clear()
            self._order.clear()


class SQLTaskStore:
    """
    TaskStore over SQLAlchemy's async engine, using plain `text()` statements.

    Example:
        >>> engine = create_async_engine("sqlite+aiosqlite:///tasks.db")
        >>> store = SQLTaskStore(engine)
        >>> await store.initialize()
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        *,
        table_name: str = "tasks",
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
                        title TEXT NOT NULL,
                        description TEXT NOT NULL DEFAULT '',
                        status TEXT NOT NULL,
                        owner_id TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
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
    def _row_to_task(row: Any) -> Task:
        data = dict(row._mapping)
        return Task(
            id=data["id"],
            title=data["title"],
            description=data["description"] or "",
            status=TaskStatus(data["status"]),
            owner_id=data["owner_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )

    async def create(self, owner_id: str, data: TaskCreate) -> Task:
        with self._tracer.span(
            "taskrelay.task_store.create",
            {ATTR_OWNER_ID: owner_id, ATTR_OPERATION: "create"},
        ):
            now = _now().isoformat()
            params = {
                "id": str(uuid4()),
                "title": data.title,
                "description": data.description,
                "status": TaskStatus.OPEN.value,
                "owner_id": owner_id,
                "now": now,
            }
            query = text(f"""
                INSERT INTO {self._table} ({_COLUMNS})
                VALUES (:id, :title, :description, :status, :owner_id, :now, :now)
                RETURNING {_COLUMNS}
            """)  # nosec B608 - table name from trusted config
            async with execute_with_connection(self.conn) as conn:
                result = await conn.execute(query, params)
                return self._row_to_task(result.one())

    async def get(self, owner_id: str, task_id: str) -> Task | None:
        query = text(f"""
            SELECT {_COLUMNS} FROM {self._table}
            WHERE id = :id AND owner_id = :owner_id
        """)  # nosec B608 - table name from trusted config
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"id": task_id, "owner_id": owner_id})
            row = result.first()
        return self._row_to_task(row) if row is not None else None

    async def list_for_owner(self, owner_id: str) -> list[Task]:
        with self._tracer.span("taskrelay.task_store.list", {ATTR_OWNER_ID: owner_id}):
            query = text(f"""
                SELECT {_COLUMNS} FROM {self._table}
                WHERE owner_id = :owner_id
                ORDER BY created_at DESC
            """)  # nosec B608 - table name from trusted config
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(query, {"owner_id": owner_id})
                rows = result.fetchall()
            return [self._row_to_task(row) for row in rows]

    async def update(self, owner_id: str, task_id: str, changes: dict[str, Any]) -> Task | None:
        with self._tracer.span(
            "taskrelay.task_store.update",
            {ATTR_OWNER_ID: owner_id, ATTR_TASK_ID: task_id, ATTR_OPERATION: "update"},
        ):
            params: dict[str, Any] = {
                "id": task_id,
                "owner_id": owner_id,
                "now": _now().isoformat(),
            }
            assignments = []
            for column in _UPDATABLE:
                if column in changes:
                    value = changes[column]
                    params[column] = value.value if isinstance(value, TaskStatus) else value
                    assignments.append(f"{column} = :{column}")
            assignments.append("updated_at = :now")

            query = text(f"""
                UPDATE {self._table}
                SET {", ".join(assignments)}
                WHERE id = :id AND owner_id = :owner_id
                RETURNING {_COLUMNS}
            """)  # nosec B608 - columns from a fixed whitelist
            async with execute_with_connection(self.conn) as conn:
                result = await conn.execute(query, params)
                row = result.first()
            return self._row_to_task(row) if row is not None else None

    async def delete(self, owner_id: str, task_id: str) -> Task | None:
        with self._tracer.span(
            "taskrelay.task_store.delete",
            {ATTR_OWNER_ID: owner_id, ATTR_TASK_ID: task_id, ATTR_OPERATION: "delete"},
        ):
            query = text(f"""
                DELETE FROM {self._table}
                WHERE id = :id AND owner_id = :owner_id
                RETURNING {_COLUMNS}
            """)  # nosec B608 - table name from trusted config
            async with execute_with_connection(self.conn) as conn:
                result = await conn.execute(query, {"id": task_id, "owner_id": owner_id})
                row = result.first()
            return self._row_to_task(row) if row is not None else None


__all__ = [
    "InMemoryTaskStore",
    "SQLTaskStore",
    "TaskStore",
]
