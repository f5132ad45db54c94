"""Dispatch queue abstraction shared by the in-process and Redis backends."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable
from uuid import uuid4

from notifyhub.domain.entities import Job, JobState, NotificationPriority
from notifyhub.domain.errors import ValidationError
from notifyhub.domain.policies import PriorityPolicy, RetryPolicy

logger = logging.getLogger(__name__)

AdmissionCheck = Callable[[Job], int]
"""Validate a new job and return its initial delay in milliseconds.

Raising :class:`ValidationError` rejects the job: it is recorded as FAILED
after a single attempt and never reaches a consumer.
"""


class DispatchQueue(ABC):
    """A broker backed job queue with priority, delay, leases and retries."""

    def __init__(self, priority_policy: PriorityPolicy | None = None) -> None:
        self.priority_policy = priority_policy or PriorityPolicy()
        self._admissions: dict[str, AdmissionCheck] = {}

    def register_admission(self, job_type: str, check: AdmissionCheck) -> None:
        self._admissions[job_type] = check

    @abstractmethod
    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        priority: str,
        max_attempts: int,
        timeout_ms: int,
    ) -> str:
        """Store a job and return its id, or raise ``QueueUnavailableError``."""

    @abstractmethod
    async def claim(self, worker_id: str, lock_ms: int) -> Job | None:
        """Lease the most urgent ready job to ``worker_id``."""

    @abstractmethod
    async def renew(self, job: Job, lock_ms: int) -> bool:
        """Extend the lease of ``job``; ``False`` means the lease was lost."""

    @abstractmethod
    async def complete(self, job: Job, result: Any = None) -> None:
        ...

    @abstractmethod
    async def retry(
        self,
        job: Job,
        delay_ms: int,
        error: str,
        payload: dict[str, Any] | None = None,
    ) -> None:
        ...

    @abstractmethod
    async def fail(self, job: Job, error: str) -> None:
        ...

    @abstractmethod
    async def requeue_stalled(self, retry_policy: RetryPolicy) -> list[str]:
        """Requeue jobs whose lease expired, counting the lost attempt."""

    @abstractmethod
    async def get(self, job_id: str) -> Job | None:
        ...

    @abstractmethod
    async def counts(self) -> dict[str, int]:
        ...

    @abstractmethod
    async def has_pending(self) -> bool:
        """Return ``True`` while any job is waiting, delayed or in flight."""

    async def close(self) -> None:
        return None

    def _admit(self, job: Job) -> int | None:
        """Run the admission check for ``job``.

        Returns the initial delay or ``None`` when the job was rejected, in
        which case ``job`` is already marked FAILED.
        """

        check = self._admissions.get(job.job_type)
        if check is None:
            return self.priority_policy.delay_ms(job.priority) if _is_known_priority(job.priority) else 0
        try:
            return max(int(check(job)), 0)
        except ValidationError as exc:
            job.attempts_made = 1
            job.last_error = str(exc)
            job.finished_at = job.enqueued_at
            job.transition(JobState.FAILED)
            logger.error(
                "Rejected %s job %s at enqueue: %s",
                job.job_type,
                job.id,
                exc,
                extra={"job_id": job.id, "attempts": 1, "last_error": str(exc), "payload": job.payload},
            )
            return None

    def _rank(self, priority: str) -> int:
        if not _is_known_priority(priority):
            return 0
        return self.priority_policy.rank(priority)


def _is_known_priority(priority: str) -> bool:
    try:
        NotificationPriority(priority)
    except ValueError:
        return False
    return True


def log_permanent_failure(
    log: logging.Logger,
    job: Job,
    attempts: int,
    error: str,
    correlation_id: str | None = None,
) -> str:
    """Record a job that will not be attempted again and return its correlation id."""

    correlation_id = correlation_id or uuid4().hex
    log.error(
        "Job %s failed permanently after %s attempt(s): %s [%s]",
        job.id,
        attempts,
        error,
        correlation_id,
        extra={
            "job_id": job.id,
            "attempts": attempts,
            "last_error": error,
            "payload": job.payload,
            "correlation_id": correlation_id,
        },
    )
    return correlation_id


__all__ = ["AdmissionCheck", "DispatchQueue", "log_permanent_failure"]
