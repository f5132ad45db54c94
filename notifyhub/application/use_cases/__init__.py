"""Aggregate application use cases."""

from .notifications import (
    archive_notifications,
    create_batch_notifications,
    create_notification,
    list_organization_notifications,
    list_unread_notifications,
    list_user_notifications,
    mark_notifications_read,
)

__all__ = [
    "archive_notifications",
    "create_batch_notifications",
    "create_notification",
    "list_organization_notifications",
    "list_unread_notifications",
    "list_user_notifications",
    "mark_notifications_read",
]
