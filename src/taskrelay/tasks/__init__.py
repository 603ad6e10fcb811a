"""Task models, stores and the mutation coordinator."""

from taskrelay.tasks.coordinator import (
    CoordinatorStats,
    PublishFailurePolicy,
    TaskMutationCoordinator,
)
from taskrelay.tasks.models import (
    Task,
    TaskCreate,
    TaskStatus,
    TaskUpdate,
    dump_task_list,
    load_task_list,
)
from taskrelay.tasks.store import InMemoryTaskStore, SQLTaskStore, TaskStore

__all__ = [
    "CoordinatorStats",
    "InMemoryTaskStore",
    "PublishFailurePolicy",
    "SQLTaskStore",
    "Task",
    "TaskCreate",
    "TaskMutationCoordinator",
    "TaskStatus",
    "TaskStore",
    "TaskUpdate",
    "dump_task_list",
    "load_task_list",
]
