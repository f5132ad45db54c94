"""Schemas exposing dispatch queue state."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from notifyhub.domain.entities import Job
from notifyhub.utils import from_epoch_seconds


class JobRead(BaseModel):
    id: str
    job_type: str
    state: str
    priority: str
    attempts_made: int
    max_attempts: int
    last_error: str | None = None
    enqueued_at: datetime | None = None
    finished_at: datetime | None = None
    result: str | None = None

    @classmethod
    def from_job(cls, job: Job) -> "JobRead":
        return cls(
            id=job.id,
            job_type=job.job_type,
            state=job.state.value,
            priority=job.priority,
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            last_error=job.last_error,
            enqueued_at=from_epoch_seconds(job.enqueued_at),
            finished_at=from_epoch_seconds(job.finished_at),
            result=str(job.result) if job.result is not None else None,
        )


class HealthRead(BaseModel):
    status: str
    queue: dict[str, int] | None = None
    broker_connected: bool
    rooms: int


__all__ = ["HealthRead", "JobRead"]
