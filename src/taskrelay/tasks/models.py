"""
Task models and mutation inputs.

Tasks are serialized with camelCase aliases (`ownerId`, `createdAt`,
`updatedAt`), which is also the shape stored in the read cache.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from taskrelay.exceptions import ValidationFailedError


class TaskStatus(StrEnum):
    OPEN = "OPEN"
    DONE = "DONE"


class Task(BaseModel):
    """
    A task row as returned by a TaskStore.

    Attributes:
        id: Store-assigned identifier
        title: Short title (1..200 characters)
        description: Free text, may be empty
        status: OPEN or DONE
        owner_id: Verified subject id of the owner
        created_at: Store-assigned creation time
        updated_at: Store-assigned time of the last change
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.OPEN
    owner_id: str = Field(alias="ownerId")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    def to_public(self) -> dict[str, Any]:
        """JSON-ready dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


class TaskCreate(BaseModel):
    """Input of `create_task`."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    title: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=2000)


class TaskUpdate(BaseModel):
    """Input of `update_task`. Only the fields that were sent are applied."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    status: TaskStatus | None = None

    def changes(self) -> dict[str, Any]:
        """Fields explicitly set on this update, without None values."""
        return {
            name: value
            for name, value in self.model_dump(exclude_unset=True).items()
            if value is not None
        }


_TASK_LIST = TypeAdapter(list[Task])


def dump_task_list(tasks: list[Task]) -> bytes:
    """Encode a task list for the read cache."""
    return _TASK_LIST.dump_json(tasks, by_alias=True)


def load_task_list(data: bytes) -> list[Task]:
    """Decode a cached task list. Raises ValueError on a corrupt entry."""
    return _TASK_LIST.validate_json(data)


def _field_errors(error: ValidationError) -> dict[str, str]:
    errors: dict[str, str] = {}
    for item in error.errors():
        field = ".".join(str(part) for part in item["loc"]) or "body"
        errors.setdefault(field, item["msg"])
    return errors


def parse_input(model: type[TaskCreate] | type[TaskUpdate], data: Any) -> Any:
    """
    Validate raw mutation input.

    Raises:
        ValidationFailedError: With one message per offending field
    """
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ValidationFailedError(_field_errors(e)) from e


__all__ = [
    "Task",
    "TaskCreate",
    "TaskStatus",
    "TaskUpdate",
    "dump_task_list",
    "load_task_list",
    "parse_input",
]
