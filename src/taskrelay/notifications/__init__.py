"""Notification records, their stores and the consuming worker."""

from taskrelay.notifications.inbox import NotificationInbox
from taskrelay.notifications.models import Notification, NotificationType
from taskrelay.notifications.processor import (
    TEMPLATES,
    NotificationProcessor,
    NotificationTemplate,
)
from taskrelay.notifications.store import (
    DEFAULT_LIST_LIMIT,
    InMemoryNotificationStore,
    NotificationStore,
    SQLNotificationStore,
)
from taskrelay.notifications.worker import NotificationWorker

__all__ = [
    "DEFAULT_LIST_LIMIT",
    "InMemoryNotificationStore",
    "Notification",
    "NotificationInbox",
    "NotificationProcessor",
    "NotificationStore",
    "NotificationTemplate",
    "NotificationType",
    "NotificationWorker",
    "SQLNotificationStore",
    "TEMPLATES",
]
