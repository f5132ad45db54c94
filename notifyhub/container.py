"""Composition root wiring the notification pipeline together."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from notifyhub.application.dispatcher import NotificationDispatcher
from notifyhub.config import Settings, get_settings
from notifyhub.domain.entities import NOTIFICATION_DISPATCH, Principal
from notifyhub.domain.policies import PriorityPolicy, RetryPolicy
from notifyhub.infrastructure.broker import InMemoryBroker, RedisBroker, SharedBroker
from notifyhub.infrastructure.cache import (
    MemoryNotificationCache,
    NotificationCache,
    RedisNotificationCache,
)
from notifyhub.infrastructure.database import build_engine, build_session_factory, initialize_database
from notifyhub.infrastructure.queue import (
    DispatchQueue,
    DispatchWorker,
    InMemoryDispatchQueue,
    RedisDispatchQueue,
)
from notifyhub.infrastructure.realtime import (
    FixedWindowRateLimiter,
    RealtimeBroadcaster,
    serialize_notification,
)
from notifyhub.infrastructure.repositories import NotificationStore
from notifyhub.infrastructure.security import IdentityVerifier

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker[Session]
    cache: NotificationCache
    store: NotificationStore
    queue: DispatchQueue
    broker: SharedBroker
    identity: IdentityVerifier
    broadcaster: RealtimeBroadcaster
    dispatcher: NotificationDispatcher
    worker: DispatchWorker
    priority_policy: PriorityPolicy
    retry_policy: RetryPolicy

    async def aclose(self) -> None:
        self.worker.stop()
        await self.broadcaster.close()
        await self.broker.close()
        await self.queue.close()
        if isinstance(self.cache, RedisNotificationCache):
            self.cache.close()
        self.engine.dispose()


def build_container(
    settings: Settings | None = None,
    *,
    queue: DispatchQueue | None = None,
    broker: SharedBroker | None = None,
    cache: NotificationCache | None = None,
    instance_id: str | None = None,
) -> ServiceContainer:
    """Build every collaborator from ``settings``.

    Redis backends are used when ``REDIS_URL`` is configured; otherwise the
    process runs as a single instance with in-process queue and broker.
    Explicit ``queue``, ``broker`` and ``cache`` arguments take precedence.
    """

    settings = settings or get_settings()

    engine = build_engine(settings.database_url)
    initialize_database(engine)
    session_factory = build_session_factory(engine)

    priority_policy = PriorityPolicy(delay_scale=settings.priority_delay_scale)
    retry_policy = RetryPolicy(
        base_delay_ms=settings.retry_base_delay_ms,
        max_delay_ms=settings.retry_max_delay_ms,
        jitter_ratio=settings.retry_jitter_ratio,
    )

    if cache is None:
        if settings.redis_url:
            cache = RedisNotificationCache.from_url(settings.redis_url, settings.cache_ttl_seconds)
        else:
            cache = MemoryNotificationCache(settings.cache_ttl_seconds)
    if queue is None:
        if settings.redis_url:
            queue = RedisDispatchQueue.from_url(
                settings.redis_url,
                name=settings.queue_name,
                priority_policy=priority_policy,
                keep_finished_seconds=settings.queue_keep_finished,
            )
        else:
            queue = InMemoryDispatchQueue(priority_policy, keep_finished=settings.queue_keep_finished)
    if broker is None:
        if settings.redis_url:
            broker = RedisBroker.from_url(
                settings.redis_url,
                reconnect_base_delay_ms=settings.broker_reconnect_base_delay_ms,
                reconnect_max_delay_ms=settings.broker_reconnect_max_delay_ms,
            )
        else:
            broker = InMemoryBroker()

    store = NotificationStore(
        session_factory,
        cache,
        default_page_size=settings.default_page_size,
        max_page_size=settings.max_page_size,
    )
    identity = IdentityVerifier.from_settings(settings)

    async def acknowledge(principal: Principal, ids: list[str]) -> int:
        return await store.mark_as_read(principal.user_id, ids)

    async def unread_snapshot(principal: Principal) -> list[dict[str, Any]]:
        unread = await store.list_unread_by_user(
            principal.user_id, organization_id=principal.organization_id
        )
        return [serialize_notification(notification) for notification in unread]

    broadcaster = RealtimeBroadcaster(
        broker,
        identity,
        rate_limiter=FixedWindowRateLimiter(
            settings.rate_limit_max_events, settings.rate_limit_window_seconds
        ),
        priority_policy=priority_policy,
        instance_id=instance_id,
        send_timeout=settings.broadcast_timeout_seconds,
        on_ack=acknowledge,
        snapshot=unread_snapshot,
    )

    dispatcher = NotificationDispatcher(
        store,
        broadcaster,
        priority_policy=priority_policy,
        retry_policy=retry_policy,
    )
    queue.register_admission(NOTIFICATION_DISPATCH, dispatcher.admit)

    worker = DispatchWorker(
        queue,
        retry_policy=retry_policy,
        concurrency=settings.queue_concurrency,
        lock_duration_ms=settings.queue_lock_duration_ms,
        lock_renew_ms=settings.queue_lock_renew_ms,
        stalled_interval_ms=settings.queue_stalled_interval_ms,
        poll_interval_ms=settings.queue_poll_interval_ms,
    )
    worker.register(NOTIFICATION_DISPATCH, dispatcher.handle)

    logger.info(
        "Notification pipeline wired (%s queue, %s broker)",
        type(queue).__name__,
        type(broker).__name__,
    )
    return ServiceContainer(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        cache=cache,
        store=store,
        queue=queue,
        broker=broker,
        identity=identity,
        broadcaster=broadcaster,
        dispatcher=dispatcher,
        worker=worker,
        priority_policy=priority_policy,
        retry_policy=retry_policy,
    )


__all__ = ["ServiceContainer", "build_container"]
