"""
Mutation coordinator: write, invalidate, publish, return.

Each mutating operation runs the same sequence:

1. Durable write scoped to the caller's owner id.
2. Invalidate the owner's read-cache entry.
3. Publish the lifecycle event `{id, ownerId, title}`.
4. Return the post-write task (the old row for a delete).

A failed write aborts the sequence. A failed publish never undoes the
write or the invalidation; `PublishFailurePolicy` decides whether the
caller hears about it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from taskrelay.broker.publisher import PublishResult, ReliablePublisher
from taskrelay.cache.read_through import ReadThroughCache
from taskrelay.events.envelope import TaskEventPayload, TaskEventType
from taskrelay.exceptions import EventPublishError, TaskNotFoundError
from taskrelay.identity import VerifiedIdentity, require_identity
from taskrelay.observability import (
    ATTR_EVENT_TYPE,
    ATTR_OPERATION,
    ATTR_OWNER_ID,
    ATTR_TASK_ID,
    Tracer,
    create_tracer,
)
from taskrelay.tasks.models import (
    Task,
    TaskCreate,
    TaskStatus,
    TaskUpdate,
    dump_task_list,
    load_task_list,
    parse_input,
)
from taskrelay.tasks.store import TaskStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_PENDING_PUBLISHES = 100


class PublishFailurePolicy(Enum):
    """What a mutation does when its event could not be published."""

    PROCEED = "proceed"
    """Log and count the failure, return the written task."""

    RAISE = "raise"
    """Raise EventPublishError after the write has been committed."""


@dataclass
class CoordinatorStats:
    mutations: int = 0
    events_published: int = 0
    publish_failures: int = 0
    deferred_publishes: int = 0
    deferrals_refused: int = 0


class TaskMutationCoordinator:
    """
    Orders store writes, cache invalidation and event publishing for tasks.

    When the publisher is not connected and `defer_when_unavailable` is set,
    the publish step runs as a tracked background task so the mutation
    returns without waiting for the broker. `drain()` waits for those.
    Deferral only applies under `PublishFailurePolicy.PROCEED`; under RAISE
    the caller always waits for the publish outcome.
    At most `max_pending_publishes` deferred publishes run at once; past
    that a mutation records the publish as failed instead of queueing it.

    Args:
        store: Task store (source of truth)
        cache: Owner-keyed read cache for task lists
        publisher: Confirmed publisher for lifecycle events
        publish_failure_policy: PROCEED (default) or RAISE
        defer_when_unavailable: Publish in the background while disconnected
        max_pending_publishes: Cap on concurrent deferred publishes
        tracer: Optional tracer
        enable_tracing: Used when no tracer is given

    Example:
        >>> coordinator = TaskMutationCoordinator(store, cache, publisher)
        >>> task = await coordinator.create_task(identity, {"title": "Buy milk"})
        >>> tasks = await coordinator.list_tasks(identity)
    """

    def __init__(
        self,
        store: TaskStore,
        cache: ReadThroughCache,
        publisher: ReliablePublisher,
        *,
        publish_failure_policy: PublishFailurePolicy = PublishFailurePolicy.PROCEED,
        defer_when_unavailable: bool = True,
        max_pending_publishes: int = DEFAULT_MAX_PENDING_PUBLISHES,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._store = store
        self._cache = cache
        self._publisher = publisher
        self._policy = publish_failure_policy
        self._defer = defer_when_unavailable
        self._max_pending = max_pending_publishes
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._pending: set[asyncio.Task[PublishResult]] = set()
        self._stats = CoordinatorStats()

    @property
    def stats(self) -> CoordinatorStats:
        return self._stats

    @property
    def publish_failure_policy(self) -> PublishFailurePolicy:
        return self._policy

    @property
    def pending_publishes(self) -> int:
        return len(self._pending)

    async def create_task(self, identity: VerifiedIdentity | None, data: Any) -> Task:
        """
        Create an OPEN task for the caller and publish `task.created`.

        Raises:
            UnauthenticatedError: No usable identity
            ValidationFailedError: Invalid input, before any store access
        """
        owner_id = require_identity(identity).subject_id
        create: TaskCreate = parse_input(TaskCreate, data)
        with self._tracer.span(
            "taskrelay.tasks.create",
            {ATTR_OPERATION: "create", ATTR_OWNER_ID: owner_id},
        ):
            task = await self._store.create(owner_id, create)
            await self._after_write("create", task, TaskEventType.CREATED)
            return task

    async def update_task(
        self,
        identity: VerifiedIdentity | None,
        task_id: str,
        data: Any,
    ) -> Task:
        """
        Apply a partial update.

        Publishes `task.completed` or `task.opened` when `status` is part of
        the change, and no event otherwise.

        Raises:
            UnauthenticatedError: No usable identity
            ValidationFailedError: Invalid input
            TaskNotFoundError: No task with this id for the caller
        """
        owner_id = require_identity(identity).subject_id
        update: TaskUpdate = parse_input(TaskUpdate, data)
        changes = update.changes()
        event_type: TaskEventType | None = None
        if "status" in changes:
            event_type = (
                TaskEventType.COMPLETED
                if changes["status"] is TaskStatus.DONE
                else TaskEventType.OPENED
            )
        return await self._update(owner_id, task_id, changes, "update", event_type)

    async def complete_task(self, identity: VerifiedIdentity | None, task_id: str) -> Task:
        """Mark a task DONE and publish `task.completed`."""
        owner_id = require_identity(identity).subject_id
        return await self._update(
            owner_id,
            task_id,
            {"status": TaskStatus.DONE},
            "complete",
            TaskEventType.COMPLETED,
        )

    async def reopen_task(self, identity: VerifiedIdentity | None, task_id: str) -> Task:
        """Mark a task OPEN and publish `task.opened`."""
        owner_id = require_identity(identity).subject_id
        return await self._update(
            owner_id,
            task_id,
            {"status": TaskStatus.OPEN},
            "reopen",
            TaskEventType.OPENED,
        )

    async def delete_task(self, identity: VerifiedIdentity | None, task_id: str) -> Task:
        """
        Delete a task and publish `task.deleted`.

        Returns:
            The row as it was before deletion

        Raises:
            TaskNotFoundError: No task with this id for the caller
        """
        owner_id = require_identity(identity).subject_id
        with self._tracer.span(
            "taskrelay.tasks.delete",
            {ATTR_OPERATION: "delete", ATTR_OWNER_ID: owner_id, ATTR_TASK_ID: task_id},
        ):
            task = await self._store.delete(owner_id, task_id) if task_id else None
            if task is None:
                raise TaskNotFoundError(task_id)
            await self._after_write("delete", task, TaskEventType.DELETED)
            return task

    async def list_tasks(self, identity: VerifiedIdentity | None) -> list[Task]:
        """The caller's tasks, newest first, served through the read cache."""
        owner_id = require_identity(identity).subject_id
        result: list[Task] = await self._cache.read(
            owner_id,
            lambda: self._store.list_for_owner(owner_id),
            dump=dump_task_list,
            load=load_task_list,
        )
        return result

    async def drain(self, timeout: float | None = None) -> bool:
        """
        Wait for background publishes to finish.

        Returns:
            True if nothing is pending any more
        """
        if not self._pending:
            return True
        _, pending = await asyncio.wait(set(self._pending), timeout=timeout)
        if pending:
            logger.warning(
                f"{len(pending)} deferred publishes still pending after drain",
                extra={"pending": len(pending), "timeout": timeout},
            )
        return not pending

    async def _update(
        self,
        owner_id: str,
        task_id: str,
        changes: dict[str, Any],
        operation: str,
        event_type: TaskEventType | None,
    ) -> Task:
        with self._tracer.span(
            f"taskrelay.tasks.{operation}",
            {ATTR_OPERATION: operation, ATTR_OWNER_ID: owner_id, ATTR_TASK_ID: task_id},
        ):
            task = await self._store.update(owner_id, task_id, changes) if task_id else None
            if task is None:
                raise TaskNotFoundError(task_id)
            await self._after_write(operation, task, event_type)
            return task

    async def _after_write(
        self,
        operation: str,
        task: Task,
        event_type: TaskEventType | None,
    ) -> None:
        self._stats.mutations += 1
        await self._cache.invalidate(task.owner_id)
        logger.info(
            f"Task {operation} committed: {task.id}",
            extra={"task_id": task.id, "owner_id": task.owner_id, "operation": operation},
        )
        if event_type is None:
            return

        payload = TaskEventPayload(id=task.id, owner_id=task.owner_id, title=task.title)
        if (
            self._defer
            and self._policy is PublishFailurePolicy.PROCEED
            and not self._publisher.is_active
        ):
            self._defer_publish(event_type, payload)
            return

        result = await self._publish(event_type, payload)
        if not result.ok and self._policy is PublishFailurePolicy.RAISE:
            raise EventPublishError(event_type.value, result.error or "unknown error")

    async def _publish(self, event_type: TaskEventType, payload: TaskEventPayload) -> PublishResult:
        with self._tracer.span(
            "taskrelay.tasks.publish",
            {ATTR_EVENT_TYPE: event_type.value, ATTR_TASK_ID: payload.id},
        ):
            result = await self._publisher.publish(event_type.value, payload.to_payload())
        if result.ok:
            self._stats.events_published += 1
        else:
            self._stats.publish_failures += 1
            logger.error(
                f"Event {event_type.value} for task {payload.id} was not published: "
                f"{result.error}",
                extra={
                    "routing_key": event_type.value,
                    "task_id": payload.id,
                    "owner_id": payload.owner_id,
                    "failure": result.failure.value if result.failure else None,
                    "policy": self._policy.value,
                },
            )
        return result

    def _defer_publish(self, event_type: TaskEventType, payload: TaskEventPayload) -> None:
        if len(self._pending) >= self._max_pending:
            self._stats.deferrals_refused += 1
            self._stats.publish_failures += 1
            logger.error(
                f"Event {event_type.value} for task {payload.id} was not published: "
                f"{len(self._pending)} deferred publishes already pending",
                extra={
                    "routing_key": event_type.value,
                    "task_id": payload.id,
                    "owner_id": payload.owner_id,
                    "pending": len(self._pending),
                    "max_pending": self._max_pending,
                },
            )
            return

        self._stats.deferred_publishes += 1
        logger.warning(
            f"Publisher not connected, deferring {event_type.value} for task {payload.id}",
            extra={"routing_key": event_type.value, "task_id": payload.id},
        )
        task = asyncio.create_task(
            self._publish(event_type, payload),
            name=f"taskrelay-publish-{payload.id}",
        )
        self._pending.add(task)
        task.add_done_callback(self._on_deferred_done)

    def _on_deferred_done(self, task: asyncio.Task[PublishResult]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._stats.publish_failures += 1
            logger.error(
                f"Deferred publish crashed: {error}",
                exc_info=error,
                extra={"error": str(error), "error_type": type(error).__name__},
            )


__all__ = [
    "CoordinatorStats",
    "PublishFailurePolicy",
    "TaskMutationCoordinator",
]
