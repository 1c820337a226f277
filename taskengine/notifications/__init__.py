from taskengine.notifications.dispatcher import (
    LoggingNotifier,
    NotificationDispatcher,
    Notifier,
    TaskSummary,
)
from taskengine.notifications.webhook import WebhookNotifier

__all__ = [
    "LoggingNotifier",
    "NotificationDispatcher",
    "Notifier",
    "TaskSummary",
    "WebhookNotifier",
]
