"""Turns task lifecycle envelopes into notification records."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from taskrelay.events.envelope import EventEnvelope, TaskEventPayload, TaskEventType
from taskrelay.notifications.models import Notification, NotificationType
from taskrelay.notifications.store import NotificationStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationTemplate:
    type: NotificationType
    message: str

    def render(self, payload: TaskEventPayload) -> str:
        return self.message.format(title=payload.title or "", id=payload.id)


TEMPLATES: dict[str, NotificationTemplate] = {
    TaskEventType.CREATED: NotificationTemplate(
        NotificationType.TASK_CREATED, "Task created: {title}"
    ),
    TaskEventType.OPENED: NotificationTemplate(
        NotificationType.TASK_OPENED, "Task reopened: {title}"
    ),
    TaskEventType.COMPLETED: NotificationTemplate(
        NotificationType.TASK_COMPLETED, "Task completed: {title}"
    ),
    TaskEventType.DELETED: NotificationTemplate(
        NotificationType.TASK_DELETED, "Task deleted: {title}"
    ),
}


class NotificationProcessor:
    """
    Consumer callback writing one notification per recognized envelope.

    Unknown routing keys are logged and treated as handled. Processing is
    not deduplicated: a redelivered envelope writes a second record.

    Example:
        >>> processor = NotificationProcessor(InMemoryNotificationStore())
        >>> consumer = BoundedConsumer(processor.process, config)
    """

    def __init__(
        self,
        store: NotificationStore,
        templates: dict[str, NotificationTemplate] | None = None,
    ) -> None:
        self._store = store
        self._templates = dict(TEMPLATES if templates is None else templates)
        self.processed = 0
        self.ignored = 0

    @property
    def store(self) -> NotificationStore:
        return self._store

    async def process(self, envelope: EventEnvelope) -> None:
        """
        Handle one envelope.

        Raises:
            NonRetryableMessageError: Payload lacks `id` or `ownerId`
            StoreError: The notification could not be written (retried)
        """
        template = self._templates.get(envelope.routing_key)
        if template is None:
            self.ignored += 1
            logger.warning(
                f"Unhandled routing key: {envelope.routing_key}",
                extra={"routing_key": envelope.routing_key, "message_id": envelope.message_id},
            )
            return

        payload = TaskEventPayload.from_envelope(envelope)
        if template.type is NotificationType.TASK_DELETED and not payload.title:
            message = f"Task deleted: {payload.id}"
        else:
            message = template.render(payload)

        notification = Notification(
            owner_id=payload.owner_id,
            type=template.type,
            message=message,
            source_message_id=envelope.message_id,
        )
        await self._store.add(notification)
        self.processed += 1
        logger.debug(
            f"Stored {template.type.value} notification for {payload.owner_id}",
            extra={
                "owner_id": payload.owner_id,
                "task_id": payload.id,
                "message_id": envelope.message_id,
            },
        )

    __call__ = process


__all__ = [
    "TEMPLATES",
    "NotificationProcessor",
    "NotificationTemplate",
]
