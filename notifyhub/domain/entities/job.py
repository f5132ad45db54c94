"""Dispatch job entity and its lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from notifyhub.domain.errors import NotificationError

NOTIFICATION_DISPATCH = "notification.dispatch"


class JobState(str, Enum):
    ENQUEUED = "ENQUEUED"
    DELAYED = "DELAYED"
    PROCESSING = "PROCESSING"
    RETRYING = "RETRYING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.ENQUEUED: frozenset({JobState.DELAYED, JobState.PROCESSING, JobState.FAILED}),
    JobState.DELAYED: frozenset({JobState.PROCESSING}),
    JobState.PROCESSING: frozenset(
        {JobState.COMPLETED, JobState.RETRYING, JobState.FAILED}
    ),
    JobState.RETRYING: frozenset({JobState.DELAYED}),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
}


class InvalidJobTransition(NotificationError):
    """Raised when a job is moved along an edge of the lifecycle that does not exist."""


@dataclass
class Job:
    """A unit of work held by the dispatch queue.

    Timestamps are unix epoch seconds so the entity serializes the same way for
    the in-process and the Redis backed queue.
    """

    id: str
    job_type: str
    payload: dict[str, Any]
    priority: str
    max_attempts: int
    timeout_ms: int
    enqueued_at: float
    state: JobState = JobState.ENQUEUED
    attempts_made: int = 0
    ready_at: float | None = None
    started_at: float | None = None
    finished_at: float | None = None
    last_error: str | None = None
    last_backoff_ms: int = 0
    lease_token: str | None = None
    lease_expires_at: float | None = None
    result: Any = None
    history: list[str] = field(default_factory=list)

    def transition(self, target: JobState) -> None:
        """Move the job to ``target`` or raise :class:`InvalidJobTransition`."""

        if target not in _TRANSITIONS[self.state]:
            raise InvalidJobTransition(
                f"Job {self.id} cannot move from {self.state.value} to {target.value}"
            )
        self.state = target
        self.history.append(target.value)

    @property
    def attempts_left(self) -> int:
        return max(self.max_attempts - self.attempts_made, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_type": self.job_type,
            "payload": self.payload,
            "priority": self.priority,
            "max_attempts": self.max_attempts,
            "timeout_ms": self.timeout_ms,
            "enqueued_at": self.enqueued_at,
            "state": self.state.value,
            "attempts_made": self.attempts_made,
            "ready_at": self.ready_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "last_error": self.last_error,
            "last_backoff_ms": self.last_backoff_ms,
            "lease_token": self.lease_token,
            "lease_expires_at": self.lease_expires_at,
            "result": self.result,
            "history": list(self.history),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        return cls(
            id=data["id"],
            job_type=data["job_type"],
            payload=dict(data.get("payload") or {}),
            priority=data["priority"],
            max_attempts=int(data["max_attempts"]),
            timeout_ms=int(data["timeout_ms"]),
            enqueued_at=float(data["enqueued_at"]),
            state=JobState(data.get("state", JobState.ENQUEUED.value)),
            attempts_made=int(data.get("attempts_made", 0)),
            ready_at=data.get("ready_at"),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            last_error=data.get("last_error"),
            last_backoff_ms=int(data.get("last_backoff_ms", 0)),
            lease_token=data.get("lease_token"),
            lease_expires_at=data.get("lease_expires_at"),
            result=data.get("result"),
            history=list(data.get("history") or []),
        )


@dataclass(frozen=True)
class JobSucceeded:
    value: Any = None


@dataclass(frozen=True)
class JobRetry:
    """Ask the queue to schedule another attempt after ``delay_ms``."""

    error: str
    delay_ms: int
    payload: dict[str, Any] | None = None


@dataclass(frozen=True)
class JobFailed:
    error: str


JobResult = JobSucceeded | JobRetry | JobFailed


__all__ = [
    "InvalidJobTransition",
    "Job",
    "JobFailed",
    "JobResult",
    "JobRetry",
    "JobState",
    "JobSucceeded",
    "NOTIFICATION_DISPATCH",
]
