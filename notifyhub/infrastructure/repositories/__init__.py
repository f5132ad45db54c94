"""Repository implementations for infrastructure layer."""

from .notification_repository import NotificationRepository
from .notification_store import NotificationStore

__all__ = ["NotificationRepository", "NotificationStore"]
