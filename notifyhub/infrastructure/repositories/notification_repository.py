"""Persistence helpers for notification entities."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from notifyhub.domain.entities import (
    Notification,
    NotificationDraft,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
    Page,
    PageRequest,
)
from notifyhub.domain.errors import InvalidStatusTransition, TransientStoreError
from notifyhub.domain.policies import PRIORITY_TABLE
from notifyhub.domain.validation import ensure_identifier, parse_notification_payload
from notifyhub.infrastructure.cache import NotificationCache, organization_scope, user_scope
from notifyhub.infrastructure.models import NotificationModel
from notifyhub.utils import (
    ensure_app_timezone,
    isoformat_or_none,
    now_in_app_naive_datetime,
)

logger = logging.getLogger(__name__)

_PRIORITY_RANK = case(
    {tier.priority.value: tier.rank for tier in PRIORITY_TABLE},
    value=NotificationModel.priority,
    else_=-1,
)


class NotificationRepository:
    """Provide create, list and status operations for :class:`Notification` objects.

    Every read is tenant scoped and may be served from ``cache``; every write
    drops the cached pages of the affected organization and user.
    """

    def __init__(
        self,
        session: Session,
        cache: NotificationCache | None = None,
        *,
        default_page_size: int = 10,
        max_page_size: int = 100,
    ) -> None:
        self.session = session
        self.cache = cache
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    def create(
        self,
        notification: NotificationDraft | dict[str, Any],
        *,
        dispatch_key: str | None = None,
    ) -> Notification:
        """Persist ``notification`` as UNREAD.

        When ``dispatch_key`` was already used the previously stored record is
        returned instead of inserting a duplicate.
        """

        draft = parse_notification_payload(notification)
        with self._translate_errors("create"):
            if dispatch_key is not None:
                existing = self._get_by_dispatch_key(dispatch_key)
                if existing is not None:
                    logger.info("Dispatch key %s already persisted as %s", dispatch_key, existing.id)
                    return self._to_entity(existing)

            now = now_in_app_naive_datetime()
            model = NotificationModel(
                organization_id=draft.organization_id,
                user_id=draft.user_id,
                type=draft.type.value,
                priority=draft.priority.value,
                status=NotificationStatus.UNREAD.value,
                title=draft.title,
                message=draft.message,
                extra=dict(draft.metadata),
                dispatch_key=dispatch_key,
                created_at=now,
                updated_at=now,
            )
            self.session.add(model)
            try:
                self.session.commit()
            except IntegrityError:
                self.session.rollback()
                existing = self._get_by_dispatch_key(dispatch_key) if dispatch_key else None
                if existing is None:
                    raise
                return self._to_entity(existing)
            self.session.refresh(model)

        self._invalidate([draft.organization_id], [draft.user_id])
        return self._to_entity(model)

    def get(self, notification_id: str) -> Notification | None:
        with self._translate_errors("get"):
            model = self.session.get(NotificationModel, notification_id)
        return self._to_entity(model) if model is not None else None

    def list_by_organization(
        self,
        organization_id: str,
        page: int | None = None,
        page_size: int | None = None,
    ) -> Page[Notification]:
        ensure_identifier(organization_id, field="organization id")
        request = self._page_request(page, page_size)
        scope = organization_scope(organization_id)
        cache_key = f"org:{request.page}:{request.page_size}"
        cached = self._cache_get(scope, cache_key)
        if cached is not None:
            return self._page_from_cache(cached)

        condition = NotificationModel.organization_id == organization_id
        with self._translate_errors("list_by_organization"):
            total = self.session.scalar(
                select(func.count()).select_from(NotificationModel).where(condition)
            )
            models = self.session.scalars(
                select(NotificationModel)
                .where(condition)
                .order_by(NotificationModel.created_at.desc(), NotificationModel.id.desc())
                .offset(request.offset)
                .limit(request.page_size)
            ).all()

        result = Page(
            items=[self._to_entity(model) for model in models],
            total=int(total or 0),
            page=request.page,
            page_size=request.page_size,
        )
        self._cache_set(scope, cache_key, self._page_to_cache(result))
        return result

    def list_by_user(
        self,
        user_id: str,
        page: int | None = None,
        page_size: int | None = None,
        *,
        organization_id: str | None = None,
    ) -> Page[Notification]:
        ensure_identifier(user_id, field="user id")
        if organization_id is not None:
            ensure_identifier(organization_id, field="organization id")
        request = self._page_request(page, page_size)
        scope = user_scope(user_id)
        cache_key = f"user:{organization_id or '*'}:{request.page}:{request.page_size}"
        cached = self._cache_get(scope, cache_key)
        if cached is not None:
            return self._page_from_cache(cached)

        conditions = self._user_conditions(user_id, organization_id)
        with self._translate_errors("list_by_user"):
            total = self.session.scalar(
                select(func.count()).select_from(NotificationModel).where(*conditions)
            )
            models = self.session.scalars(
                self._user_ordered(select(NotificationModel).where(*conditions))
                .offset(request.offset)
                .limit(request.page_size)
            ).all()

        result = Page(
            items=[self._to_entity(model) for model in models],
            total=int(total or 0),
            page=request.page,
            page_size=request.page_size,
        )
        self._cache_set(scope, cache_key, self._page_to_cache(result))
        return result

    def list_unread_by_user(
        self, user_id: str, *, organization_id: str | None = None
    ) -> list[Notification]:
        ensure_identifier(user_id, field="user id")
        if organization_id is not None:
            ensure_identifier(organization_id, field="organization id")
        scope = user_scope(user_id)
        cache_key = f"unread:{organization_id or '*'}"
        cached = self._cache_get(scope, cache_key)
        if cached is not None:
            return [self._deserialize(item) for item in cached]

        conditions = self._user_conditions(user_id, organization_id)
        conditions.append(NotificationModel.status == NotificationStatus.UNREAD.value)
        with self._translate_errors("list_unread_by_user"):
            models = self.session.scalars(
                self._user_ordered(select(NotificationModel).where(*conditions))
            ).all()

        items = [self._to_entity(model) for model in models]
        self._cache_set(scope, cache_key, [self._serialize(item) for item in items])
        return items

    def mark_as_read(self, user_id: str, notification_ids: Iterable[str]) -> int:
        """Mark the user's UNREAD notifications as READ and return how many changed.

        Identifiers owned by somebody else are ignored without error.
        """

        return self.set_status(user_id, notification_ids, NotificationStatus.READ)

    def archive(self, user_id: str, notification_ids: Iterable[str]) -> int:
        return self.set_status(user_id, notification_ids, NotificationStatus.ARCHIVED)

    def set_status(
        self,
        user_id: str,
        notification_ids: Iterable[str],
        target: NotificationStatus,
    ) -> int:
        """Move owned notifications forward to ``target`` in one atomic UPDATE.

        Rows already at or beyond ``target`` are left untouched, which keeps the
        operation idempotent and prevents concurrent writers from regressing a
        status.
        """

        target = NotificationStatus(target)
        if target is NotificationStatus.UNREAD:
            raise InvalidStatusTransition("Notifications cannot return to UNREAD")
        ids = _unique([notification_id for notification_id in notification_ids if notification_id])
        if not ids:
            return 0

        earlier = [status.value for status in NotificationStatus if status.order < target.order]
        ownership = (
            NotificationModel.id.in_(ids),
            NotificationModel.user_id == user_id,
        )
        with self._translate_errors("set_status"):
            organizations = self.session.scalars(
                select(NotificationModel.organization_id).where(*ownership).distinct()
            ).all()
            result = self.session.execute(
                update(NotificationModel)
                .where(*ownership, NotificationModel.status.in_(earlier))
                .values(status=target.value, updated_at=now_in_app_naive_datetime())
                .execution_options(synchronize_session=False)
            )
            self.session.commit()

        changed = int(result.rowcount or 0)
        if changed:
            self._invalidate(organizations, [user_id])
        logger.debug("Moved %s notification(s) of user %s to %s", changed, user_id, target.value)
        return changed

    def _get_by_dispatch_key(self, dispatch_key: str) -> NotificationModel | None:
        return self.session.scalars(
            select(NotificationModel).where(NotificationModel.dispatch_key == dispatch_key)
        ).first()

    @staticmethod
    def _user_conditions(user_id: str, organization_id: str | None) -> list:
        conditions = [NotificationModel.user_id == user_id]
        if organization_id is not None:
            conditions.append(NotificationModel.organization_id == organization_id)
        return conditions

    @staticmethod
    def _user_ordered(statement):
        return statement.order_by(
            _PRIORITY_RANK.desc(),
            NotificationModel.created_at.desc(),
            NotificationModel.id.desc(),
        )

    def _page_request(self, page: int | None, page_size: int | None) -> PageRequest:
        return PageRequest.normalize(
            page,
            page_size,
            default_size=self.default_page_size,
            max_size=self.max_page_size,
        )

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (SQLAlchemyError, TimeoutError) as exc:
            self.session.rollback()
            logger.warning("Notification store %s failed: %s", operation, exc)
            raise TransientStoreError(f"Notification store unavailable during {operation}") from exc

    def _invalidate(self, organization_ids: Iterable[str], user_ids: Iterable[str]) -> None:
        if self.cache is None:
            return
        scopes = [organization_scope(org) for org in organization_ids]
        scopes.extend(user_scope(user) for user in user_ids)
        self.cache.invalidate(*scopes)

    def _cache_get(self, scope: str, key: str) -> Any | None:
        if self.cache is None:
            return None
        return self.cache.get(scope, key)

    def _cache_set(self, scope: str, key: str, value: Any) -> None:
        if self.cache is not None:
            self.cache.set(scope, key, value)

    def _page_to_cache(self, page: Page[Notification]) -> dict[str, Any]:
        return {
            "items": [self._serialize(item) for item in page.items],
            "total": page.total,
            "page": page.page,
            "page_size": page.page_size,
        }

    def _page_from_cache(self, data: dict[str, Any]) -> Page[Notification]:
        return Page(
            items=[self._deserialize(item) for item in data["items"]],
            total=data["total"],
            page=data["page"],
            page_size=data["page_size"],
        )

    @staticmethod
    def _serialize(notification: Notification) -> dict[str, Any]:
        return {
            "id": notification.id,
            "organization_id": notification.organization_id,
            "user_id": notification.user_id,
            "type": notification.type.value,
            "priority": notification.priority.value,
            "status": notification.status.value,
            "title": notification.title,
            "message": notification.message,
            "metadata": notification.metadata,
            "created_at": isoformat_or_none(notification.created_at),
            "updated_at": isoformat_or_none(notification.updated_at),
        }

    @staticmethod
    def _deserialize(data: dict[str, Any]) -> Notification:
        def parse(value: str | None) -> datetime | None:
            return datetime.fromisoformat(value) if value else None

        return Notification(
            id=data["id"],
            organization_id=data["organization_id"],
            user_id=data["user_id"],
            type=NotificationType(data["type"]),
            priority=NotificationPriority(data["priority"]),
            status=NotificationStatus(data["status"]),
            title=data["title"],
            message=data["message"],
            metadata=dict(data.get("metadata") or {}),
            created_at=parse(data.get("created_at")),
            updated_at=parse(data.get("updated_at")),
        )

    @staticmethod
    def _to_entity(model: NotificationModel) -> Notification:
        return Notification(
            id=model.id,
            organization_id=model.organization_id,
            user_id=model.user_id,
            type=NotificationType(model.type),
            priority=NotificationPriority(model.priority),
            status=NotificationStatus(model.status),
            title=model.title,
            message=model.message,
            metadata=dict(model.extra or {}),
            created_at=ensure_app_timezone(model.created_at),
            updated_at=ensure_app_timezone(model.updated_at),
        )


def _unique(values: Sequence[str]) -> list[str]:
    seen: set[str] = set()
    unique: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        unique.append(value)
    return unique


__all__ = ["NotificationRepository"]
