"""User-facing notifications and the sinks that deliver them."""

from quonitor.notifications.models import Notification, NotificationKind, Urgency
from quonitor.notifications.sinks import (
    LogNotificationSink,
    NotificationSink,
    WebhookNotificationSink,
    build_sinks,
)

__all__ = [
    "LogNotificationSink",
    "Notification",
    "NotificationKind",
    "NotificationSink",
    "Urgency",
    "WebhookNotificationSink",
    "build_sinks",
]
