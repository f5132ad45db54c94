"""Public helpers for producing and reading notifications."""

from .inbox import (
    archive_notifications,
    list_organization_notifications,
    list_unread_notifications,
    list_user_notifications,
    mark_notifications_read,
)
from .producers import create_batch_notifications, create_notification

__all__ = [
    "archive_notifications",
    "create_batch_notifications",
    "create_notification",
    "list_organization_notifications",
    "list_unread_notifications",
    "list_user_notifications",
    "mark_notifications_read",
]
