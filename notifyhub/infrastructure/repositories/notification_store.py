"""Async facade over :class:`NotificationRepository`.

The repository works on a synchronous SQLAlchemy session; workers and
websocket handlers run on the event loop, so each call opens its own session
inside a worker thread.
"""

from __future__ import annotations

from functools import partial
from typing import Any, Callable, Iterable, TypeVar

from anyio import to_thread
from sqlalchemy.orm import Session, sessionmaker

from notifyhub.domain.entities import Notification, NotificationDraft, Page
from notifyhub.infrastructure.cache import NotificationCache

from .notification_repository import NotificationRepository

T = TypeVar("T")


class NotificationStore:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        cache: NotificationCache | None = None,
        *,
        default_page_size: int = 10,
        max_page_size: int = 100,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache
        self._default_page_size = default_page_size
        self._max_page_size = max_page_size

    def _call(self, operation: Callable[[NotificationRepository], T]) -> T:
        with self._session_factory() as session:
            repository = NotificationRepository(
                session,
                self._cache,
                default_page_size=self._default_page_size,
                max_page_size=self._max_page_size,
            )
            return operation(repository)

    async def _run(self, operation: Callable[[NotificationRepository], T]) -> T:
        return await to_thread.run_sync(partial(self._call, operation))

    async def create(
        self,
        notification: NotificationDraft | dict[str, Any],
        *,
        dispatch_key: str | None = None,
    ) -> Notification:
        return await self._run(lambda repo: repo.create(notification, dispatch_key=dispatch_key))

    async def get(self, notification_id: str) -> Notification | None:
        return await self._run(lambda repo: repo.get(notification_id))

    async def list_by_organization(
        self, organization_id: str, page: int | None = None, page_size: int | None = None
    ) -> Page[Notification]:
        return await self._run(
            lambda repo: repo.list_by_organization(organization_id, page, page_size)
        )

    async def list_by_user(
        self,
        user_id: str,
        page: int | None = None,
        page_size: int | None = None,
        *,
        organization_id: str | None = None,
    ) -> Page[Notification]:
        return await self._run(
            lambda repo: repo.list_by_user(
                user_id, page, page_size, organization_id=organization_id
            )
        )

    async def list_unread_by_user(
        self, user_id: str, *, organization_id: str | None = None
    ) -> list[Notification]:
        return await self._run(
            lambda repo: repo.list_unread_by_user(user_id, organization_id=organization_id)
        )

    async def mark_as_read(self, user_id: str, notification_ids: Iterable[str]) -> int:
        ids = list(notification_ids)
        return await self._run(lambda repo: repo.mark_as_read(user_id, ids))

    async def archive(self, user_id: str, notification_ids: Iterable[str]) -> int:
        ids = list(notification_ids)
        return await self._run(lambda repo: repo.archive(user_id, ids))


__all__ = ["NotificationStore"]
