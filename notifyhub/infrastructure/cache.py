"""Short lived read cache for notification listings.

Entries are grouped by scope (``org:<id>`` or ``user:<id>``) so a write can drop
every cached page of the affected organization and user at once.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

import redis

logger = logging.getLogger(__name__)


def organization_scope(organization_id: str) -> str:
    return f"org:{organization_id}"


def user_scope(user_id: str) -> str:
    return f"user:{user_id}"


class NotificationCache(ABC):
    @abstractmethod
    def get(self, scope: str, key: str) -> Any | None:
        """Return the cached value or ``None`` on a miss."""

    @abstractmethod
    def set(self, scope: str, key: str, value: Any) -> None:
        ...

    @abstractmethod
    def invalidate(self, *scopes: str) -> None:
        ...


class MemoryNotificationCache(NotificationCache):
    """Process local cache used when no Redis instance is configured."""

    def __init__(self, ttl_seconds: int = 300, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, dict[str, tuple[float, str]]] = {}
        self._lock = threading.Lock()

    def get(self, scope: str, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(scope, {}).get(key)
            if entry is None:
                return None
            expires_at, raw = entry
            if self._clock() >= expires_at:
                self._entries[scope].pop(key, None)
                return None
        return json.loads(raw)

    def set(self, scope: str, key: str, value: Any) -> None:
        if self._ttl <= 0:
            return
        raw = json.dumps(value)
        with self._lock:
            self._entries.setdefault(scope, {})[key] = (self._clock() + self._ttl, raw)

    def invalidate(self, *scopes: str) -> None:
        with self._lock:
            for scope in scopes:
                self._entries.pop(scope, None)


class RedisNotificationCache(NotificationCache):
    """Redis backed cache keeping one hash per scope.

    Redis outages degrade to cache misses; the store stays the source of truth.
    """

    def __init__(self, client: redis.Redis, ttl_seconds: int = 300, *, prefix: str = "notifyhub:cache") -> None:
        self._redis = client
        self._ttl = ttl_seconds
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int = 300) -> "RedisNotificationCache":
        client = redis.from_url(url, encoding="utf-8", decode_responses=True)
        return cls(client, ttl_seconds)

    def _key(self, scope: str) -> str:
        return f"{self._prefix}:{scope}"

    def get(self, scope: str, key: str) -> Any | None:
        try:
            raw = self._redis.hget(self._key(scope), key)
        except redis.RedisError as exc:
            logger.warning("Notification cache read failed for %s: %s", scope, exc)
            return None
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, scope: str, key: str, value: Any) -> None:
        if self._ttl <= 0:
            return
        name = self._key(scope)
        try:
            pipe = self._redis.pipeline()
            pipe.hset(name, key, json.dumps(value))
            pipe.expire(name, self._ttl)
            pipe.execute()
        except redis.RedisError as exc:
            logger.warning("Notification cache write failed for %s: %s", scope, exc)

    def invalidate(self, *scopes: str) -> None:
        if not scopes:
            return
        try:
            self._redis.delete(*(self._key(scope) for scope in scopes))
        except redis.RedisError as exc:
            # Readers may see stale pages until the TTL elapses.
            logger.warning("Notification cache invalidation failed for %s: %s", scopes, exc)

    def close(self) -> None:
        self._redis.close()


__all__ = [
    "MemoryNotificationCache",
    "NotificationCache",
    "RedisNotificationCache",
    "organization_scope",
    "user_scope",
]
