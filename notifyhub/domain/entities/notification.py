"""Domain entities describing tenant notifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class NotificationType(str, Enum):
    SUBSCRIPTION_RENEWAL = "SUBSCRIPTION_RENEWAL"
    USAGE_THRESHOLD = "USAGE_THRESHOLD"
    AI_INSIGHT = "AI_INSIGHT"
    SYSTEM_ALERT = "SYSTEM_ALERT"


class NotificationPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class NotificationStatus(str, Enum):
    """Reading state of a notification.

    Statuses only move forward: ``UNREAD -> READ -> ARCHIVED``. ``UNREAD`` may
    also be archived directly.
    """

    UNREAD = "UNREAD"
    READ = "READ"
    ARCHIVED = "ARCHIVED"

    @property
    def order(self) -> int:
        return _STATUS_ORDER[self]

    def can_transition_to(self, target: "NotificationStatus") -> bool:
        """Return ``True`` when moving to ``target`` keeps the status monotonic."""

        return target.order >= self.order


_STATUS_ORDER = {
    NotificationStatus.UNREAD: 0,
    NotificationStatus.READ: 1,
    NotificationStatus.ARCHIVED: 2,
}


@dataclass
class NotificationDraft:
    """Validated notification fields that have not been persisted yet."""

    organization_id: str
    user_id: str
    type: NotificationType
    priority: NotificationPriority
    title: str
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        """Return the camelCase job payload understood by the dispatcher."""

        return {
            "organizationId": self.organization_id,
            "userId": self.user_id,
            "type": self.type.value,
            "priority": self.priority.value,
            "title": self.title,
            "message": self.message,
            "metadata": dict(self.metadata),
        }


@dataclass
class Notification:
    """Message persisted for a user inside an organization."""

    id: str | None
    organization_id: str
    user_id: str
    type: NotificationType
    priority: NotificationPriority
    title: str
    message: str
    status: NotificationStatus = NotificationStatus.UNREAD
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


__all__ = [
    "Notification",
    "NotificationDraft",
    "NotificationPriority",
    "NotificationStatus",
    "NotificationType",
]
