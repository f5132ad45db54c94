"""Wire representations of notifications for realtime clients."""

from __future__ import annotations

from typing import Any

from notifyhub.domain.entities import Notification
from notifyhub.utils import isoformat_or_none


def serialize_notification(notification: Notification) -> dict[str, Any]:
    return {
        "id": notification.id,
        "organizationId": notification.organization_id,
        "userId": notification.user_id,
        "type": notification.type.value,
        "priority": notification.priority.value,
        "status": notification.status.value,
        "title": notification.title,
        "message": notification.message,
        "metadata": notification.metadata or {},
        "createdAt": isoformat_or_none(notification.created_at),
        "updatedAt": isoformat_or_none(notification.updated_at),
    }


def error_event(code: str, message: str) -> dict[str, Any]:
    """Build the non-fatal error frame sent to a single connection."""

    return {"type": "error", "payload": {"code": code, "message": message}}


__all__ = ["error_event", "serialize_notification"]
