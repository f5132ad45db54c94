"""Consumer of notification dispatch jobs.

For every job the dispatcher validates the payload, persists the notification
and hands it to the broadcaster, always in that order. The priority delay is
applied when the job is admitted to the queue so that a delayed job is never
holding a worker slot.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Protocol
from uuid import uuid4

from notifyhub.domain.entities import (
    NOTIFICATION_DISPATCH,
    Job,
    JobFailed,
    JobResult,
    JobRetry,
    JobSucceeded,
    Notification,
    NotificationDraft,
)
from notifyhub.domain.errors import PermanentFailure, TransientStoreError, ValidationError
from notifyhub.domain.policies import PriorityPolicy, RetryPolicy
from notifyhub.domain.validation import parse_notification_payload
from notifyhub.infrastructure.queue.base import log_permanent_failure

logger = logging.getLogger(__name__)


class NotificationWriter(Protocol):
    async def create(
        self, notification: NotificationDraft | dict[str, Any], *, dispatch_key: str | None = None
    ) -> Notification: ...


class NotificationFanout(Protocol):
    async def broadcast_notification(self, notification: Notification) -> int: ...


class NotificationDispatcher:
    job_type = NOTIFICATION_DISPATCH

    def __init__(
        self,
        store: NotificationWriter,
        broadcaster: NotificationFanout | None,
        *,
        priority_policy: PriorityPolicy | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.priority_policy = priority_policy or PriorityPolicy()
        self.retry_policy = retry_policy or RetryPolicy()

    def admit(self, job: Job) -> int:
        """Validate ``job`` at enqueue time and return its priority delay in ms.

        Raises :class:`ValidationError` for malformed payloads; the queue then
        fails the job after a single attempt.
        """

        draft = parse_notification_payload(job.payload)
        if draft.priority.value != job.priority:
            raise ValidationError(
                "Job priority does not match payload priority",
                [f"priority: expected {draft.priority.value}, got {job.priority}"],
            )
        return self.priority_policy.delay_ms(draft.priority)

    async def handle(self, job: Job) -> JobResult:
        correlation_id = uuid4().hex
        attempt = job.attempts_made + 1
        logger.info(
            "Dispatching job %s attempt %s/%s [%s]",
            job.id,
            attempt,
            job.max_attempts,
            correlation_id,
        )

        try:
            notification = await self._persist(job, attempt)
        except PermanentFailure as exc:
            log_permanent_failure(logger, job, attempt, str(exc), correlation_id)
            return JobFailed(str(exc))
        except TransientStoreError as exc:
            return self._retry(job, attempt, exc, correlation_id)

        await self._fan_out(notification, correlation_id)
        logger.info(
            "Job %s persisted notification %s for user %s [%s]",
            job.id,
            notification.id,
            notification.user_id,
            correlation_id,
        )
        return JobSucceeded(notification.id)

    async def _persist(self, job: Job, attempt: int) -> Notification:
        try:
            draft = parse_notification_payload(job.payload)
        except ValidationError as exc:
            raise PermanentFailure(str(exc)) from exc

        try:
            return await self.store.create(draft, dispatch_key=job.id)
        except TransientStoreError as exc:
            if self.retry_policy.should_retry(attempt, job.max_attempts):
                raise
            raise PermanentFailure(str(exc)) from exc

    def _retry(self, job: Job, attempt: int, exc: Exception, correlation_id: str) -> JobRetry:
        error = str(exc)
        delay_ms = self.retry_policy.backoff_ms(attempt, job.last_backoff_ms)
        payload = dict(job.payload)
        metadata = dict(payload.get("metadata") or {})
        metadata.update(
            retryCount=attempt,
            lastError=error,
            lastRetryTimestamp=datetime.now(tz=timezone.utc).isoformat(),
        )
        payload["metadata"] = metadata
        logger.warning(
            "Job %s attempt %s failed transiently, retrying in %sms: %s [%s]",
            job.id,
            attempt,
            delay_ms,
            error,
            correlation_id,
        )
        return JobRetry(error, delay_ms, payload=payload)

    async def _fan_out(self, notification: Notification, correlation_id: str) -> None:
        if self.broadcaster is None:
            return
        try:
            await self.broadcaster.broadcast_notification(notification)
        except Exception as exc:
            logger.warning(
                "Broadcast of notification %s failed: %s [%s]",
                notification.id,
                exc,
                correlation_id,
            )


__all__ = ["NotificationDispatcher", "NotificationFanout", "NotificationWriter"]
