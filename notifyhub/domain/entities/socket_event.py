"""Versioned event envelope pushed to realtime clients."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .notification import NotificationType

SOCKET_EVENT_VERSION = "1.0"


class SocketEventType(str, Enum):
    SUBSCRIPTION_UPDATED = "subscription.updated"
    USAGE_ALERT = "usage.alert"
    AI_INSIGHT = "ai.insight"
    USER_ACTION = "user.action"


_EVENT_FOR_NOTIFICATION = {
    NotificationType.SUBSCRIPTION_RENEWAL: SocketEventType.SUBSCRIPTION_UPDATED,
    NotificationType.USAGE_THRESHOLD: SocketEventType.USAGE_ALERT,
    NotificationType.AI_INSIGHT: SocketEventType.AI_INSIGHT,
    NotificationType.SYSTEM_ALERT: SocketEventType.USAGE_ALERT,
}


def event_type_for(notification_type: NotificationType) -> SocketEventType:
    """Return the socket event type announced for ``notification_type``."""

    return _EVENT_FOR_NOTIFICATION[notification_type]


@dataclass
class SocketEvent:
    type: SocketEventType
    payload: dict[str, Any] = field(default_factory=dict)
    version: str = SOCKET_EVENT_VERSION
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    def to_message(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "payload": self.payload,
            "version": self.version,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> "SocketEvent":
        return cls(
            type=SocketEventType(message["type"]),
            payload=dict(message.get("payload") or {}),
            version=message.get("version") or SOCKET_EVENT_VERSION,
            timestamp=datetime.fromisoformat(message["timestamp"]),
        )


__all__ = [
    "SOCKET_EVENT_VERSION",
    "SocketEvent",
    "SocketEventType",
    "event_type_for",
]
