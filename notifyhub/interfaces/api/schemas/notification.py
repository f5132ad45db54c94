"""Pydantic models describing notification payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from notifyhub.domain.entities import Notification, Page


class NotificationCreate(BaseModel):
    """Dispatch request accepted from producers.

    Field level rules are enforced by the domain validation so the same checks
    apply to producers that enqueue directly.
    """

    model_config = ConfigDict(populate_by_name=True)

    organization_id: str | None = Field(default=None, alias="organizationId")
    user_id: str | None = Field(default=None, alias="userId")
    type: str | None = None
    priority: str | None = None
    title: str | None = None
    message: str | None = None
    metadata: dict[str, Any] | None = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class NotificationBatchCreate(BaseModel):
    notifications: list[NotificationCreate] = Field(..., min_length=1)


class NotificationIdsRequest(BaseModel):
    """Payload used to update the status of a batch of notifications."""

    ids: list[str] = Field(..., min_length=1, description="Notification identifiers")

    def unique_ids(self) -> list[str]:
        """Return the list of identifiers without duplicates preserving order."""

        unique: list[str] = []
        seen: set[str] = set()
        for notification_id in self.ids:
            if notification_id in seen:
                continue
            seen.add(notification_id)
            unique.append(notification_id)
        return unique


class NotificationRead(BaseModel):
    """Representation of a notification delivered to the client."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    organization_id: str = Field(alias="organizationId")
    user_id: str = Field(alias="userId")
    type: str
    priority: str
    status: str
    title: str
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = Field(default=None, alias="createdAt")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")

    @classmethod
    def from_entity(cls, notification: Notification) -> "NotificationRead":
        return cls(
            id=notification.id or "",
            organization_id=notification.organization_id,
            user_id=notification.user_id,
            type=notification.type.value,
            priority=notification.priority.value,
            status=notification.status.value,
            title=notification.title,
            message=notification.message,
            metadata=notification.metadata or {},
            created_at=notification.created_at,
            updated_at=notification.updated_at,
        )


class NotificationPage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: list[NotificationRead]
    total: int
    page: int
    page_size: int = Field(alias="pageSize")
    total_pages: int = Field(alias="totalPages")

    @classmethod
    def from_page(cls, page: Page[Notification]) -> "NotificationPage":
        return cls(
            items=[NotificationRead.from_entity(item) for item in page.items],
            total=page.total,
            page=page.page,
            page_size=page.page_size,
            total_pages=page.total_pages,
        )


class JobAccepted(BaseModel):
    job_id: str


class BatchAccepted(BaseModel):
    job_ids: list[str]


__all__ = [
    "BatchAccepted",
    "JobAccepted",
    "NotificationBatchCreate",
    "NotificationCreate",
    "NotificationIdsRequest",
    "NotificationPage",
    "NotificationRead",
]
