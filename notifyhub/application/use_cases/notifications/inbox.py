"""Use cases reading and updating a principal's notifications."""

from __future__ import annotations

from collections.abc import Iterable

from notifyhub.domain.entities import Notification, Page, Principal
from notifyhub.domain.errors import AccessDenied
from notifyhub.infrastructure.repositories import NotificationStore

ADMIN_ROLE = "admin"
ORGANIZATION_ADMIN_ROLE = "org-admin"


async def list_organization_notifications(
    store: NotificationStore,
    *,
    principal: Principal,
    organization_id: str,
    page: int | None = None,
    page_size: int | None = None,
) -> Page[Notification]:
    """Return a page of the organization's notifications, newest first."""

    if organization_id != principal.organization_id:
        raise AccessDenied("Notifications of another organization cannot be listed")
    if not principal.has_any_role(ADMIN_ROLE, ORGANIZATION_ADMIN_ROLE):
        raise AccessDenied("Listing organization notifications requires an admin role")
    return await store.list_by_organization(organization_id, page, page_size)


async def list_user_notifications(
    store: NotificationStore,
    *,
    principal: Principal,
    user_id: str,
    page: int | None = None,
    page_size: int | None = None,
) -> Page[Notification]:
    """Return a page ordered by priority, then by creation time."""

    _ensure_can_read_user(principal, user_id)
    return await store.list_by_user(
        user_id, page, page_size, organization_id=principal.organization_id
    )


async def list_unread_notifications(
    store: NotificationStore, *, principal: Principal
) -> list[Notification]:
    return await store.list_unread_by_user(
        principal.user_id, organization_id=principal.organization_id
    )


async def mark_notifications_read(
    store: NotificationStore, *, principal: Principal, notification_ids: Iterable[str]
) -> int:
    return await store.mark_as_read(principal.user_id, notification_ids)


async def archive_notifications(
    store: NotificationStore, *, principal: Principal, notification_ids: Iterable[str]
) -> int:
    return await store.archive(principal.user_id, notification_ids)


def _ensure_can_read_user(principal: Principal, user_id: str) -> None:
    if user_id == principal.user_id or principal.has_any_role(ADMIN_ROLE):
        return
    raise AccessDenied("Notifications of another user cannot be listed")


__all__ = [
    "ADMIN_ROLE",
    "ORGANIZATION_ADMIN_ROLE",
    "archive_notifications",
    "list_organization_notifications",
    "list_unread_notifications",
    "list_user_notifications",
    "mark_notifications_read",
]
