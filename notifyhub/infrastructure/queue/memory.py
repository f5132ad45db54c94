"""In-process dispatch queue used for single instance deployments and tests."""

from __future__ import annotations

import itertools
import logging
import time
from collections import OrderedDict
from typing import Any, Callable
from uuid import uuid4

from notifyhub.domain.entities import Job, JobState
from notifyhub.domain.policies import PriorityPolicy, RetryPolicy

from .base import DispatchQueue, log_permanent_failure

logger = logging.getLogger(__name__)


class InMemoryDispatchQueue(DispatchQueue):
    """Keep jobs in process memory.

    The queue lives on one event loop and never awaits while mutating state,
    so every operation is atomic with respect to other coroutines.
    """

    def __init__(
        self,
        priority_policy: PriorityPolicy | None = None,
        *,
        keep_finished: int = 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(priority_policy)
        self._clock = clock
        self._keep_finished = keep_finished
        self._jobs: dict[str, Job] = {}
        self._waiting: dict[str, tuple[int, float, int]] = {}
        self._active: set[str] = set()
        self._finished: OrderedDict[str, None] = OrderedDict()
        self._sequence = itertools.count()
        self.closed = False

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        priority: str,
        max_attempts: int,
        timeout_ms: int,
    ) -> str:
        now = self._clock()
        job = Job(
            id=uuid4().hex,
            job_type=job_type,
            payload=dict(payload),
            priority=priority,
            max_attempts=max_attempts,
            timeout_ms=timeout_ms,
            enqueued_at=now,
        )
        delay_ms = self._admit(job)
        self._jobs[job.id] = job
        if delay_ms is None:
            self._mark_finished(job.id)
            return job.id

        if delay_ms > 0:
            job.transition(JobState.DELAYED)
        self._schedule(job, now + delay_ms / 1000)
        logger.debug("Enqueued %s job %s (priority %s, delay %sms)", job_type, job.id, priority, delay_ms)
        return job.id

    async def claim(self, worker_id: str, lock_ms: int) -> Job | None:
        now = self._clock()
        due = [(key, job_id) for job_id, key in self._waiting.items() if key[1] <= now]
        if not due:
            return None
        _, job_id = min(due)
        del self._waiting[job_id]

        job = self._jobs[job_id]
        job.transition(JobState.PROCESSING)
        job.started_at = now
        job.lease_token = f"{worker_id}:{uuid4().hex}"
        job.lease_expires_at = now + lock_ms / 1000
        self._active.add(job_id)
        return Job.from_dict(job.to_dict())

    async def renew(self, job: Job, lock_ms: int) -> bool:
        stored = self._owned(job)
        if stored is None:
            return False
        now = self._clock()
        if stored.started_at is not None and now > stored.started_at + stored.timeout_ms / 1000:
            return False
        stored.lease_expires_at = now + lock_ms / 1000
        job.lease_expires_at = stored.lease_expires_at
        return True

    async def complete(self, job: Job, result: Any = None) -> None:
        stored = self._owned(job)
        if stored is None:
            return
        stored.attempts_made += 1
        stored.result = result
        stored.payload = dict(job.payload)
        self._finish(stored, JobState.COMPLETED)

    async def retry(
        self,
        job: Job,
        delay_ms: int,
        error: str,
        payload: dict[str, Any] | None = None,
    ) -> None:
        stored = self._owned(job)
        if stored is None:
            return
        stored.attempts_made += 1
        stored.last_error = error
        if payload is not None:
            stored.payload = dict(payload)
        if stored.attempts_made >= stored.max_attempts:
            self._finish(stored, JobState.FAILED)
            return
        self._requeue(stored, delay_ms)

    async def fail(self, job: Job, error: str) -> None:
        stored = self._owned(job)
        if stored is None:
            return
        stored.attempts_made += 1
        stored.last_error = error
        self._finish(stored, JobState.FAILED)

    async def requeue_stalled(self, retry_policy: RetryPolicy) -> list[str]:
        now = self._clock()
        stalled = [
            job_id
            for job_id in self._active
            if (self._jobs[job_id].lease_expires_at or 0) <= now
        ]
        for job_id in stalled:
            job = self._jobs[job_id]
            job.attempts_made += 1
            job.last_error = "Job stalled: lease expired before acknowledgement"
            if job.attempts_made >= job.max_attempts:
                log_permanent_failure(logger, job, job.attempts_made, job.last_error)
                self._finish(job, JobState.FAILED)
                continue
            delay_ms = retry_policy.backoff_ms(job.attempts_made, job.last_backoff_ms)
            logger.warning("Requeued stalled job %s (attempt %s)", job_id, job.attempts_made)
            self._requeue(job, delay_ms)
        return stalled

    async def get(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return Job.from_dict(job.to_dict()) if job is not None else None

    async def counts(self) -> dict[str, int]:
        counts = {state.value: 0 for state in JobState}
        for job in self._jobs.values():
            counts[job.state.value] += 1
        return counts

    async def has_pending(self) -> bool:
        return bool(self._waiting or self._active)

    async def close(self) -> None:
        self.closed = True

    def _owned(self, job: Job) -> Job | None:
        stored = self._jobs.get(job.id)
        if (
            stored is None
            or stored.state is not JobState.PROCESSING
            or stored.lease_token != job.lease_token
        ):
            logger.warning("Ignoring update for job %s: lease no longer held", job.id)
            return None
        return stored

    def _schedule(self, job: Job, ready_at: float) -> None:
        job.ready_at = ready_at
        self._waiting[job.id] = (-self._rank(job.priority), ready_at, next(self._sequence))

    def _requeue(self, job: Job, delay_ms: int) -> None:
        self._active.discard(job.id)
        job.lease_token = None
        job.lease_expires_at = None
        job.last_backoff_ms = delay_ms
        job.transition(JobState.RETRYING)
        job.transition(JobState.DELAYED)
        self._schedule(job, self._clock() + delay_ms / 1000)

    def _finish(self, job: Job, state: JobState) -> None:
        self._active.discard(job.id)
        job.lease_token = None
        job.lease_expires_at = None
        job.finished_at = self._clock()
        job.transition(state)
        self._mark_finished(job.id)

    def _mark_finished(self, job_id: str) -> None:
        self._finished[job_id] = None
        while len(self._finished) > self._keep_finished:
            expired, _ = self._finished.popitem(last=False)
            self._jobs.pop(expired, None)


__all__ = ["InMemoryDispatchQueue"]
