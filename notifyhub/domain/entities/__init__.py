"""Domain entities exposed by the application."""

from .job import (
    NOTIFICATION_DISPATCH,
    InvalidJobTransition,
    Job,
    JobFailed,
    JobResult,
    JobRetry,
    JobState,
    JobSucceeded,
)
from .notification import (
    Notification,
    NotificationDraft,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
)
from .page import Page, PageRequest
from .principal import Principal, room_for
from .socket_event import (
    SOCKET_EVENT_VERSION,
    SocketEvent,
    SocketEventType,
    event_type_for,
)

__all__ = [
    "InvalidJobTransition",
    "Job",
    "JobFailed",
    "JobResult",
    "JobRetry",
    "JobState",
    "JobSucceeded",
    "NOTIFICATION_DISPATCH",
    "Notification",
    "NotificationDraft",
    "NotificationPriority",
    "NotificationStatus",
    "NotificationType",
    "Page",
    "PageRequest",
    "Principal",
    "SOCKET_EVENT_VERSION",
    "SocketEvent",
    "SocketEventType",
    "event_type_for",
    "room_for",
]
