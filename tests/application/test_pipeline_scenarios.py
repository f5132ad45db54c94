"""End-to-end runs of the dispatch pipeline with in-process backends."""

import pytest

from notifyhub.application.use_cases.notifications import create_notification
from notifyhub.domain.entities import NOTIFICATION_DISPATCH, JobState, NotificationStatus
from notifyhub.domain.errors import TransientStoreError, ValidationError

pytestmark = pytest.mark.anyio


class FlakyStore:
    """Delegate to the real store after failing the first ``failures`` writes."""

    def __init__(self, store, failures: int) -> None:
        self._store = store
        self.failures = failures
        self.calls = 0

    async def create(self, notification, *, dispatch_key=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientStoreError("Notification store unavailable during create")
        return await self._store.create(notification, dispatch_key=dispatch_key)


async def _connect(container, transport_factory, make_token, user_id, organization_id):
    transport = transport_factory()
    await container.broadcaster.connect(transport, make_token(user_id, organization_id))
    return transport


async def test_notification_is_persisted_and_broadcast_to_its_organization(
    container, make_payload, make_token, transport_factory
):
    org1_a = await _connect(container, transport_factory, make_token, "u1", "org1")
    org1_b = await _connect(container, transport_factory, make_token, "u2", "org1")
    org2 = await _connect(container, transport_factory, make_token, "u3", "org2")

    job_id = await create_notification(container.queue, make_payload(priority="HIGH"))
    await container.worker.run_until_idle(timeout=5)

    job = await container.queue.get(job_id)
    assert job.state is JobState.COMPLETED
    assert job.attempts_made == 1

    page = await container.store.list_by_user("u1", organization_id="org1")
    (notification,) = page.items
    assert notification.status is NotificationStatus.UNREAD
    assert job.result == notification.id

    for transport in (org1_a, org1_b):
        assert transport.sent[0] == {"type": "init", "data": []}
        (event,) = transport.of_type("subscription.updated")
        assert event["payload"]["id"] == notification.id
        assert event["payload"]["title"] == "Renewal due"
    assert org2.of_type("subscription.updated") == []


async def test_job_without_organization_fails_permanently_without_side_effects(
    container, make_payload, make_token, transport_factory
):
    watcher = await _connect(container, transport_factory, make_token, "u1", "org1")
    payload = make_payload()
    payload.pop("organizationId")

    job_id = await container.queue.enqueue(
        NOTIFICATION_DISPATCH, payload, priority="HIGH", max_attempts=3, timeout_ms=1000
    )
    processed = await container.worker.run_until_idle(timeout=5)

    job = await container.queue.get(job_id)
    assert job.state is JobState.FAILED
    assert job.attempts_made == 1
    assert "Missing required notification identifiers" in job.last_error
    assert processed == 0
    assert (await container.store.list_by_user("u1")).total == 0
    assert watcher.sent == [{"type": "init", "data": []}]

    with pytest.raises(ValidationError):
        await create_notification(container.queue, payload)


async def test_store_outage_is_retried_until_the_notification_lands_once(
    container, make_payload
):
    flaky = FlakyStore(container.store, failures=2)
    container.dispatcher.store = flaky

    job_id = await create_notification(container.queue, make_payload(priority="HIGH"), max_attempts=3)
    processed = await container.worker.run_until_idle(timeout=5)

    job = await container.queue.get(job_id)
    assert processed == 3
    assert flaky.calls == 3
    assert job.state is JobState.COMPLETED
    assert job.attempts_made == 3
    assert job.history.count("RETRYING") == 2

    page = await container.store.list_by_organization("org1")
    (notification,) = page.items
    assert notification.metadata["retryCount"] == 2
    assert notification.metadata["lastError"] == "Notification store unavailable during create"


async def test_store_outage_beyond_the_attempt_budget_fails_the_job(container, make_payload):
    container.dispatcher.store = FlakyStore(container.store, failures=5)

    job_id = await create_notification(container.queue, make_payload(), max_attempts=3)
    await container.worker.run_until_idle(timeout=5)

    job = await container.queue.get(job_id)
    assert job.state is JobState.FAILED
    assert job.attempts_made == 3
    assert (await container.store.list_by_organization("org1")).total == 0


async def test_rate_limit_is_enforced_per_connection(container, make_token, transport_factory):
    noisy, quiet = transport_factory(), transport_factory()
    noisy_connection = await container.broadcaster.connect(noisy, make_token("u1", "org1"))
    quiet_connection = await container.broadcaster.connect(quiet, make_token("u2", "org1"))

    for _ in range(101):
        await container.broadcaster.handle_client_event(noisy_connection, {"type": "ping"})
    await container.broadcaster.handle_client_event(quiet_connection, {"type": "ping"})

    assert len(noisy.of_type("pong")) == 100
    (error,) = noisy.of_type("error")
    assert error["payload"]["code"] == "RATE_LIMIT_EXCEEDED"
    assert quiet.of_type("pong") == [{"type": "pong"}]
    assert quiet.of_type("error") == []
