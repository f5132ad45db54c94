"""Per-connection quota of client events."""

from __future__ import annotations

import time
from typing import Callable

from notifyhub.domain.errors import RateLimitExceeded


class FixedWindowRateLimiter:
    """Allow ``max_events`` per key inside each ``window_seconds`` window.

    The window starts with the first event of a key and resets once it has
    elapsed. State is owned by a single broadcaster instance.
    """

    def __init__(
        self,
        max_events: int = 100,
        window_seconds: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_events <= 0 or window_seconds <= 0:
            raise ValueError("max_events and window_seconds must be positive")
        self.max_events = max_events
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}

    def allow(self, key: str) -> bool:
        now = self._clock()
        started, count = self._windows.get(key, (now, 0))
        if now - started >= self.window_seconds:
            started, count = now, 0
        if count >= self.max_events:
            self._windows[key] = (started, count)
            return False
        self._windows[key] = (started, count + 1)
        return True

    def check(self, key: str) -> None:
        """Consume one event for ``key`` or raise :class:`RateLimitExceeded`."""

        if not self.allow(key):
            raise RateLimitExceeded(
                f"More than {self.max_events} events in {self.window_seconds:g}s"
            )

    def remaining(self, key: str) -> int:
        now = self._clock()
        started, count = self._windows.get(key, (now, 0))
        if now - started >= self.window_seconds:
            return self.max_events
        return max(self.max_events - count, 0)

    def discard(self, key: str) -> None:
        self._windows.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._windows

    def __len__(self) -> int:
        return len(self._windows)


__all__ = ["FixedWindowRateLimiter"]
