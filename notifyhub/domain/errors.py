"""Error taxonomy shared by the notification pipeline."""

from __future__ import annotations

from collections.abc import Sequence


class NotificationError(Exception):
    """Base class for every error raised by the pipeline."""


class ValidationError(NotificationError, ValueError):
    """Malformed or missing fields in a job payload or an API call.

    Never retried: bad producer input cannot heal on its own.
    """

    def __init__(self, message: str, errors: Sequence[str] | None = None) -> None:
        super().__init__(message)
        self.errors: list[str] = list(errors or [])

    def __str__(self) -> str:
        base = super().__str__()
        if not self.errors:
            return base
        return f"{base}: {'; '.join(self.errors)}"


class InvalidStatusTransition(ValidationError):
    """A notification status change that would move backwards."""


class NotFoundError(NotificationError, LookupError):
    """The caller addressed a resource through a malformed identifier."""


class AccessDenied(NotificationError, PermissionError):
    """The authenticated principal may not read or write the requested scope."""


class TransientStoreError(NotificationError):
    """The persistence layer is temporarily unavailable."""


class PermanentFailure(NotificationError):
    """A dispatch job exhausted its attempts or was rejected outright."""


class QueueUnavailableError(NotificationError):
    """The queue broker could not be reached."""


class RateLimitExceeded(NotificationError):
    """A connection exceeded its event quota for the current window."""


class UnauthorizedConnection(NotificationError):
    """Missing, expired or malformed identity assertion, or a foreign room."""


class BroadcastFailure(NotificationError):
    """Fan-out to a room or to the shared broker failed."""


class BrokerUnavailableError(BroadcastFailure):
    """The shared broker is disconnected; cross-instance fan-out is degraded."""


__all__ = [
    "AccessDenied",
    "BroadcastFailure",
    "BrokerUnavailableError",
    "InvalidStatusTransition",
    "NotFoundError",
    "NotificationError",
    "PermanentFailure",
    "QueueUnavailableError",
    "RateLimitExceeded",
    "TransientStoreError",
    "UnauthorizedConnection",
    "ValidationError",
]
