"""Worker pool pulling typed jobs from a :class:`DispatchQueue`."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable
from uuid import uuid4

import anyio

from notifyhub.domain.entities import Job, JobFailed, JobResult, JobRetry, JobSucceeded
from notifyhub.domain.errors import QueueUnavailableError
from notifyhub.domain.policies import RetryPolicy

from .base import DispatchQueue, log_permanent_failure

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[JobResult]]


class DispatchWorker:
    """Run ``concurrency`` consumers plus a stalled job sweeper.

    Each claimed job is processed under its own timeout while a heartbeat
    renews the lease; the handler's :data:`JobResult` decides whether the
    queue completes, retries or fails the job.
    """

    def __init__(
        self,
        queue: DispatchQueue,
        *,
        retry_policy: RetryPolicy | None = None,
        concurrency: int = 5,
        lock_duration_ms: int = 20_000,
        lock_renew_ms: int = 10_000,
        stalled_interval_ms: int = 30_000,
        poll_interval_ms: int = 250,
        worker_id: str | None = None,
    ) -> None:
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        self.queue = queue
        self.retry_policy = retry_policy or RetryPolicy()
        self.concurrency = concurrency
        self.lock_duration_ms = lock_duration_ms
        self.lock_renew_ms = lock_renew_ms
        self.stalled_interval_ms = stalled_interval_ms
        self.poll_interval_ms = poll_interval_ms
        self.worker_id = worker_id or uuid4().hex[:12]
        self._handlers: dict[str, JobHandler] = {}
        self._cancel_scope: anyio.CancelScope | None = None
        self._stopping = False

    def register(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    async def run(self) -> None:
        """Consume jobs until :meth:`stop` is called or the task is cancelled."""

        self._stopping = False
        logger.info(
            "Dispatch worker %s started with %s consumer(s)", self.worker_id, self.concurrency
        )
        try:
            async with anyio.create_task_group() as tg:
                self._cancel_scope = tg.cancel_scope
                for index in range(self.concurrency):
                    tg.start_soon(self._consume, f"{self.worker_id}-{index}")
                tg.start_soon(self._sweep_stalled)
        finally:
            self._cancel_scope = None
            logger.info("Dispatch worker %s stopped", self.worker_id)

    def stop(self) -> None:
        self._stopping = True
        if self._cancel_scope is not None:
            self._cancel_scope.cancel()

    async def process_next(self, consumer_id: str | None = None) -> Job | None:
        """Claim and process one ready job, returning it or ``None`` when idle."""

        job = await self.queue.claim(consumer_id or self.worker_id, self.lock_duration_ms)
        if job is None:
            return None
        await self._execute(job)
        return job

    async def run_until_idle(self, timeout: float | None = None) -> int:
        """Process jobs until nothing is waiting, delayed or in flight.

        Returns the number of attempts processed.
        """

        processed = 0
        with anyio.fail_after(timeout):
            while await self.queue.has_pending():
                await self.queue.requeue_stalled(self.retry_policy)
                job = await self.process_next()
                if job is None:
                    await anyio.sleep(self.poll_interval_ms / 1000)
                    continue
                processed += 1
        return processed

    async def _consume(self, consumer_id: str) -> None:
        poll = self.poll_interval_ms / 1000
        while not self._stopping:
            try:
                job = await self.process_next(consumer_id)
            except QueueUnavailableError:
                logger.warning("Consumer %s cannot reach the queue; backing off", consumer_id)
                await anyio.sleep(poll * 4)
                continue
            except Exception:
                logger.exception("Consumer %s failed to process a job; continuing", consumer_id)
                await anyio.sleep(poll)
                continue
            if job is None:
                await anyio.sleep(poll)

    async def _sweep_stalled(self) -> None:
        while not self._stopping:
            await anyio.sleep(self.stalled_interval_ms / 1000)
            try:
                await self.queue.requeue_stalled(self.retry_policy)
            except QueueUnavailableError:
                logger.warning("Stalled job sweep skipped: queue unavailable")
            except Exception:
                logger.exception("Stalled job sweep failed; retrying next interval")

    async def _execute(self, job: Job) -> None:
        handler = self._handlers.get(job.job_type)
        if handler is None:
            error = f"Unknown job type {job.job_type}"
            log_permanent_failure(logger, job, job.attempts_made + 1, error)
            await self.queue.fail(job, error)
            return

        async with anyio.create_task_group() as tg:
            tg.start_soon(self._heartbeat, job)
            try:
                result = await self._run_handler(handler, job)
            finally:
                tg.cancel_scope.cancel()
        await self._settle(job, result)

    async def _run_handler(self, handler: JobHandler, job: Job) -> JobResult:
        try:
            with anyio.fail_after(job.timeout_ms / 1000):
                return await handler(job)
        except TimeoutError:
            logger.warning("Job %s timed out after %sms", job.id, job.timeout_ms)
            return self._retry_or_fail(job, f"Timed out after {job.timeout_ms}ms")
        except Exception as exc:
            logger.exception("Handler for job %s raised unexpectedly", job.id)
            return self._retry_or_fail(job, f"{type(exc).__name__}: {exc}")

    def _retry_or_fail(self, job: Job, error: str) -> JobResult:
        attempt = job.attempts_made + 1
        if not self.retry_policy.should_retry(attempt, job.max_attempts):
            log_permanent_failure(logger, job, attempt, error)
            return JobFailed(error)
        return JobRetry(error, self.retry_policy.backoff_ms(attempt, job.last_backoff_ms))

    async def _heartbeat(self, job: Job) -> None:
        interval = self.lock_renew_ms / 1000
        while True:
            await anyio.sleep(interval)
            try:
                renewed = await self.queue.renew(job, self.lock_duration_ms)
            except QueueUnavailableError:
                logger.warning("Lease renewal for job %s failed: queue unavailable", job.id)
                continue
            if not renewed:
                logger.warning("Lost lease on job %s; the stall detector will requeue it", job.id)
                return

    async def _settle(self, job: Job, result: JobResult) -> None:
        if isinstance(result, JobSucceeded):
            await self.queue.complete(job, result.value)
        elif isinstance(result, JobRetry):
            await self.queue.retry(job, result.delay_ms, result.error, result.payload)
        elif isinstance(result, JobFailed):
            await self.queue.fail(job, result.error)
        else:
            raise TypeError(f"Unsupported job result {result!r}")


__all__ = ["DispatchWorker", "JobHandler"]
