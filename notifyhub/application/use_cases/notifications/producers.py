"""Use cases enqueueing notification dispatch jobs."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from notifyhub.domain.entities import NOTIFICATION_DISPATCH, NotificationDraft
from notifyhub.domain.errors import ValidationError
from notifyhub.domain.validation import parse_notification_payload
from notifyhub.infrastructure.queue import DispatchQueue

logger = logging.getLogger(__name__)


async def create_notification(
    queue: DispatchQueue,
    payload: NotificationDraft | dict[str, Any],
    *,
    max_attempts: int = 3,
    timeout_ms: int = 20_000,
) -> str:
    """Validate ``payload`` and enqueue one dispatch job, returning its id.

    Returns as soon as the job is queued; persistence and fan-out happen in the
    dispatch worker.
    """

    draft = parse_notification_payload(payload)
    return await _enqueue(queue, draft, max_attempts=max_attempts, timeout_ms=timeout_ms)


async def create_batch_notifications(
    queue: DispatchQueue,
    items: Sequence[NotificationDraft | dict[str, Any]],
    *,
    max_batch_size: int = 100,
    max_attempts: int = 3,
    timeout_ms: int = 20_000,
) -> list[str]:
    """Enqueue one job per item after validating the whole batch.

    Nothing is enqueued when any item is invalid.
    """

    if not items:
        raise ValidationError("Batch must contain at least one notification")
    if len(items) > max_batch_size:
        raise ValidationError(f"Batch size cannot exceed {max_batch_size} notifications")

    drafts: list[NotificationDraft] = []
    problems: list[str] = []
    for index, item in enumerate(items):
        try:
            drafts.append(parse_notification_payload(item))
        except ValidationError as exc:
            problems.extend(f"[{index}] {problem}" for problem in (exc.errors or [str(exc)]))
    if problems:
        raise ValidationError("Invalid notification batch", problems)

    job_ids = [
        await _enqueue(queue, draft, max_attempts=max_attempts, timeout_ms=timeout_ms)
        for draft in drafts
    ]
    logger.info("Enqueued batch of %s notification job(s)", len(job_ids))
    return job_ids


async def _enqueue(
    queue: DispatchQueue,
    draft: NotificationDraft,
    *,
    max_attempts: int,
    timeout_ms: int,
) -> str:
    return await queue.enqueue(
        NOTIFICATION_DISPATCH,
        draft.to_payload(),
        priority=draft.priority.value,
        max_attempts=max_attempts,
        timeout_ms=timeout_ms,
    )


__all__ = ["create_batch_notifications", "create_notification"]
