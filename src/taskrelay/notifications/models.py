"""Notification records produced from task lifecycle events."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class NotificationType(StrEnum):
    TASK_CREATED = "TASK_CREATED"
    TASK_OPENED = "TASK_OPENED"
    TASK_COMPLETED = "TASK_COMPLETED"
    TASK_DELETED = "TASK_DELETED"


class Notification(BaseModel):
    """
    A user-facing notification.

    Attributes:
        id: Record identifier
        owner_id: Subject the notification is for
        type: Kind of lifecycle change
        message: Human-readable text
        created_at: When the record was written
        source_message_id: Message id of the envelope it came from, for
            tracing duplicates back to redeliveries
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    owner_id: str = Field(alias="ownerId")
    type: NotificationType
    message: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC), alias="createdAt")
    source_message_id: str | None = Field(default=None, alias="sourceMessageId")

    def to_public(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


__all__ = [
    "Notification",
    "NotificationType",
]
