"""Validation of dispatch job payloads.

A payload is a tagged variant keyed by ``type``: every variant shares the base
fields and adds its own checks on ``metadata``. Payloads are validated once at
the queue boundary and again by the dispatcher before persisting.
"""

from __future__ import annotations

import re
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from notifyhub.domain.entities import NotificationDraft, NotificationPriority, NotificationType
from notifyhub.domain.errors import NotFoundError, ValidationError

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,63}$")
TITLE_MAX_LENGTH = 255
MESSAGE_MAX_LENGTH = 1000

_MISSING_IDENTIFIERS = "Missing required notification identifiers"


class NotificationPayload(BaseModel):
    """Wire shape of a notification dispatch job payload."""

    model_config = ConfigDict(
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="ignore",
    )

    organization_id: str = Field(..., alias="organizationId")
    user_id: str = Field(..., alias="userId")
    type: NotificationType
    priority: NotificationPriority
    title: str = Field(..., min_length=1, max_length=TITLE_MAX_LENGTH)
    message: str = Field(..., min_length=1, max_length=MESSAGE_MAX_LENGTH)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("organization_id", "user_id")
    @classmethod
    def _validate_identifier(cls, value: str) -> str:
        if not IDENTIFIER_PATTERN.match(value):
            raise ValueError("must be an opaque identifier of letters, digits, '_', '.', ':' or '-'")
        return value

    @field_validator("metadata", mode="before")
    @classmethod
    def _default_metadata(cls, value: Any) -> Any:
        return {} if value is None else value

    @model_validator(mode="after")
    def _validate_variant(self) -> "NotificationPayload":
        check = _VARIANT_CHECKS.get(self.type)
        if check is not None:
            check(self.metadata)
        return self

    def to_draft(self) -> NotificationDraft:
        return NotificationDraft(
            organization_id=self.organization_id,
            user_id=self.user_id,
            type=self.type,
            priority=self.priority,
            title=self.title,
            message=self.message,
            metadata=dict(self.metadata),
        )


def _check_subscription(metadata: Mapping[str, Any]) -> None:
    subscription_id = metadata.get("subscriptionId")
    if subscription_id is not None and not isinstance(subscription_id, str):
        raise ValueError("metadata.subscriptionId must be a string")


def _check_usage_threshold(metadata: Mapping[str, Any]) -> None:
    threshold = metadata.get("thresholdValue")
    if threshold is not None and (
        isinstance(threshold, bool) or not isinstance(threshold, (int, float))
    ):
        raise ValueError("metadata.thresholdValue must be numeric")


def _check_ai_insight(metadata: Mapping[str, Any]) -> None:
    confidence = metadata.get("aiConfidence")
    if confidence is None:
        return
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise ValueError("metadata.aiConfidence must be numeric")
    if not 0 <= confidence <= 1:
        raise ValueError("metadata.aiConfidence must be between 0 and 1")


_VARIANT_CHECKS = {
    NotificationType.SUBSCRIPTION_RENEWAL: _check_subscription,
    NotificationType.USAGE_THRESHOLD: _check_usage_threshold,
    NotificationType.AI_INSIGHT: _check_ai_insight,
}


def parse_notification_payload(payload: Any) -> NotificationDraft:
    """Return a :class:`NotificationDraft` or raise :class:`ValidationError`."""

    if isinstance(payload, NotificationDraft):
        payload = payload.to_payload()
    if not isinstance(payload, Mapping):
        raise ValidationError("Notification payload must be an object")

    try:
        model = NotificationPayload.model_validate(dict(payload))
    except PydanticValidationError as exc:
        problems = [_describe(error) for error in exc.errors()]
        missing_ids = any(
            error["type"] == "missing" and error["loc"][:1] in (("organizationId",), ("userId",))
            for error in exc.errors()
        )
        message = _MISSING_IDENTIFIERS if missing_ids else "Invalid notification payload"
        raise ValidationError(message, problems) from exc
    return model.to_draft()


def ensure_identifier(value: str | None, *, field: str = "id") -> str:
    """Return ``value`` when it is a well formed identifier, else raise :class:`NotFoundError`."""

    if value is None or not IDENTIFIER_PATTERN.match(value):
        raise NotFoundError(f"Malformed {field}: {value!r}")
    return value


def _describe(error: Mapping[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ())) or "payload"
    return f"{location}: {error.get('msg', 'invalid value')}"


__all__ = [
    "IDENTIFIER_PATTERN",
    "MESSAGE_MAX_LENGTH",
    "NotificationPayload",
    "TITLE_MAX_LENGTH",
    "ensure_identifier",
    "parse_notification_payload",
]
