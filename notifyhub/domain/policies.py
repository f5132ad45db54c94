"""Scheduling policies for dispatch jobs.

Every priority dependent number used by the pipeline lives in
:data:`PRIORITY_TABLE` so ordering guarantees can be audited in one place.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Callable

from notifyhub.domain.entities import NotificationPriority


@dataclass(frozen=True)
class PriorityTier:
    priority: NotificationPriority
    rank: int
    delay_ms: int
    urgency: str


PRIORITY_TABLE: tuple[PriorityTier, ...] = (
    PriorityTier(NotificationPriority.URGENT, rank=3, delay_ms=0, urgency="immediate"),
    PriorityTier(NotificationPriority.HIGH, rank=2, delay_ms=1000, urgency="high"),
    PriorityTier(NotificationPriority.MEDIUM, rank=1, delay_ms=5000, urgency="normal"),
    PriorityTier(NotificationPriority.LOW, rank=0, delay_ms=15000, urgency="low"),
)


class PriorityPolicy:
    """Map priorities to processing delay, claim rank and broadcast urgency."""

    def __init__(
        self,
        table: tuple[PriorityTier, ...] = PRIORITY_TABLE,
        *,
        delay_scale: float = 1.0,
    ) -> None:
        if delay_scale < 0:
            raise ValueError("delay_scale cannot be negative")
        self._tiers = {tier.priority: tier for tier in table}
        missing = set(NotificationPriority) - set(self._tiers)
        if missing:
            names = ", ".join(sorted(priority.value for priority in missing))
            raise ValueError(f"Priority table is missing tiers for: {names}")
        self._delay_scale = delay_scale

    def tier(self, priority: NotificationPriority | str) -> PriorityTier:
        return self._tiers[NotificationPriority(priority)]

    def delay_ms(self, priority: NotificationPriority | str) -> int:
        return int(round(self.tier(priority).delay_ms * self._delay_scale))

    def rank(self, priority: NotificationPriority | str) -> int:
        return self.tier(priority).rank

    def urgency(self, priority: NotificationPriority | str) -> str:
        return self.tier(priority).urgency

    @property
    def ranks(self) -> list[int]:
        """Ranks ordered from the most to the least urgent."""

        return sorted({tier.rank for tier in self._tiers.values()}, reverse=True)


class RetryPolicy:
    """Capped exponential backoff with jitter.

    Successive delays never shrink: each computed delay is at least the
    previous one, so jitter cannot make attempt ``n + 1`` come sooner than
    attempt ``n``.
    """

    def __init__(
        self,
        *,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 30_000,
        factor: float = 2.0,
        jitter_ratio: float = 0.2,
        rng: Callable[[], float] = random.random,
    ) -> None:
        if base_delay_ms <= 0 or max_delay_ms < base_delay_ms:
            raise ValueError("Retry delays must satisfy 0 < base_delay_ms <= max_delay_ms")
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.factor = factor
        self.jitter_ratio = jitter_ratio
        self._rng = rng

    def backoff_ms(self, attempts_made: int, previous_ms: int = 0) -> int:
        """Return the delay before the attempt following ``attempts_made`` failures."""

        exponent = max(attempts_made - 1, 0)
        raw = self.base_delay_ms * (self.factor**exponent)
        jittered = raw * (1 + self.jitter_ratio * self._rng())
        return int(min(self.max_delay_ms, max(previous_ms, jittered)))

    def should_retry(self, attempts_made: int, max_attempts: int) -> bool:
        """``attempts_made`` counts the attempt that just failed."""

        return attempts_made < max_attempts


__all__ = ["PRIORITY_TABLE", "PriorityPolicy", "PriorityTier", "RetryPolicy"]
