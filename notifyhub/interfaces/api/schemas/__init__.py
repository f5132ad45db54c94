from .job import HealthRead, JobRead
from .notification import (
    BatchAccepted,
    JobAccepted,
    NotificationBatchCreate,
    NotificationCreate,
    NotificationIdsRequest,
    NotificationPage,
    NotificationRead,
)

__all__ = [
    "BatchAccepted",
    "HealthRead",
    "JobAccepted",
    "JobRead",
    "NotificationBatchCreate",
    "NotificationCreate",
    "NotificationIdsRequest",
    "NotificationPage",
    "NotificationRead",
]
