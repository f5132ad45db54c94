"""Tests for job, status, event and pagination entities."""

from datetime import datetime, timezone

import pytest

from notifyhub.domain.entities import (
    NOTIFICATION_DISPATCH,
    InvalidJobTransition,
    Job,
    JobState,
    NotificationStatus,
    NotificationType,
    Page,
    PageRequest,
    Principal,
    SocketEvent,
    SocketEventType,
    event_type_for,
    room_for,
)


def _job(**overrides) -> Job:
    values = {
        "id": "job-1",
        "job_type": NOTIFICATION_DISPATCH,
        "payload": {"organizationId": "org1"},
        "priority": "HIGH",
        "max_attempts": 3,
        "timeout_ms": 1000,
        "enqueued_at": 100.0,
    }
    values.update(overrides)
    return Job(**values)


def test_job_follows_the_retry_lifecycle():
    job = _job()

    job.transition(JobState.DELAYED)
    job.transition(JobState.PROCESSING)
    job.transition(JobState.RETRYING)
    job.transition(JobState.DELAYED)
    job.transition(JobState.PROCESSING)
    job.transition(JobState.COMPLETED)

    assert job.state.is_terminal
    assert job.history == ["DELAYED", "PROCESSING", "RETRYING", "DELAYED", "PROCESSING", "COMPLETED"]


@pytest.mark.parametrize(
    ("path", "target"),
    [
        ([], JobState.COMPLETED),
        ([], JobState.RETRYING),
        ([JobState.DELAYED], JobState.FAILED),
        ([JobState.PROCESSING, JobState.COMPLETED], JobState.PROCESSING),
        ([JobState.FAILED], JobState.DELAYED),
    ],
)
def test_job_rejects_missing_edges(path, target):
    job = _job()
    for state in path:
        job.transition(state)

    with pytest.raises(InvalidJobTransition):
        job.transition(target)


def test_enqueued_job_can_be_rejected_outright():
    job = _job()

    job.transition(JobState.FAILED)

    assert job.state is JobState.FAILED


def test_job_serialization_keeps_lifecycle_state():
    job = _job(attempts_made=2, last_error="database is locked", last_backoff_ms=40)
    job.transition(JobState.DELAYED)

    restored = Job.from_dict(job.to_dict())

    assert restored == job
    assert restored.attempts_left == 1


def test_status_moves_forward_only():
    assert NotificationStatus.UNREAD.can_transition_to(NotificationStatus.READ)
    assert NotificationStatus.UNREAD.can_transition_to(NotificationStatus.ARCHIVED)
    assert NotificationStatus.READ.can_transition_to(NotificationStatus.ARCHIVED)
    assert not NotificationStatus.ARCHIVED.can_transition_to(NotificationStatus.READ)
    assert not NotificationStatus.READ.can_transition_to(NotificationStatus.UNREAD)


@pytest.mark.parametrize(
    ("notification_type", "event_type"),
    [
        (NotificationType.SUBSCRIPTION_RENEWAL, SocketEventType.SUBSCRIPTION_UPDATED),
        (NotificationType.USAGE_THRESHOLD, SocketEventType.USAGE_ALERT),
        (NotificationType.AI_INSIGHT, SocketEventType.AI_INSIGHT),
        (NotificationType.SYSTEM_ALERT, SocketEventType.USAGE_ALERT),
    ],
)
def test_notification_types_map_to_socket_events(notification_type, event_type):
    assert event_type_for(notification_type) is event_type


def test_socket_event_message_shape():
    timestamp = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
    event = SocketEvent(SocketEventType.AI_INSIGHT, {"id": "n1"}, timestamp=timestamp)

    message = event.to_message()

    assert message == {
        "type": "ai.insight",
        "payload": {"id": "n1"},
        "version": "1.0",
        "timestamp": "2024-05-01T12:30:00+00:00",
    }
    assert SocketEvent.from_message(message) == event


def test_principal_room_and_roles():
    principal = Principal("u1", "org1", frozenset({"org-admin"}))

    assert principal.room_id == room_for("org1") == "org_org1"
    assert principal.has_any_role("admin", "org-admin")
    assert not principal.has_any_role("admin")


@pytest.mark.parametrize(
    ("page", "page_size", "expected"),
    [
        (None, None, (1, 10)),
        (0, 5, (1, 5)),
        (-3, 0, (1, 1)),
        (2, 500, (2, 100)),
    ],
)
def test_page_request_normalization(page, page_size, expected):
    request = PageRequest.normalize(page, page_size)

    assert (request.page, request.page_size) == expected


def test_page_offsets_and_totals():
    assert PageRequest(page=3, page_size=10).offset == 20
    assert Page(items=[], total=0, page=1, page_size=10).total_pages == 0
    assert Page(items=[], total=21, page=1, page_size=10).total_pages == 3
