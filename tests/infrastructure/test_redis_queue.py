"""Tests for the Redis dispatch queue against a mocked client."""

import json
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from notifyhub.domain.entities import NOTIFICATION_DISPATCH, Job, JobState
from notifyhub.domain.errors import QueueUnavailableError, ValidationError
from notifyhub.domain.policies import RetryPolicy
from notifyhub.infrastructure.queue import RedisDispatchQueue
from notifyhub.infrastructure.queue.redis_queue import (
    CLAIM_SCRIPT,
    RECLAIM_SCRIPT,
    RENEW_SCRIPT,
    SETTLE_SCRIPT,
)

pytestmark = pytest.mark.anyio

PREFIX = "notifyhub:queue:{notifications}"
NOW = 1_000.0


@pytest.fixture
def scripts():
    return {}


@pytest.fixture
def client(scripts):
    client = MagicMock()

    def register_script(source):
        scripts[source] = AsyncMock(name="script")
        return scripts[source]

    client.register_script.side_effect = register_script
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[])
    client.pipeline.return_value = pipe
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock()
    client.zrem = AsyncMock()
    client.zadd = AsyncMock()
    client.zrangebyscore = AsyncMock(return_value=[])
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def queue(client):
    return RedisDispatchQueue(client, clock=lambda: NOW)


def _job(state=JobState.DELAYED, **overrides) -> Job:
    values = {
        "id": "job-1",
        "job_type": NOTIFICATION_DISPATCH,
        "payload": {"priority": "HIGH"},
        "priority": "HIGH",
        "max_attempts": 3,
        "timeout_ms": 5000,
        "enqueued_at": NOW - 10,
        "state": state,
    }
    values.update(overrides)
    return Job(**values)


def _leased(**overrides) -> Job:
    values = {"started_at": NOW, "lease_token": "w1:abc", "lease_expires_at": NOW + 5}
    values.update(overrides)
    return _job(state=JobState.PROCESSING, **values)


def _settle_args(scripts):
    return scripts[SETTLE_SCRIPT].await_args.kwargs["args"]


async def test_enqueue_indexes_the_job_by_rank_and_ready_time(queue, client):
    job_id = await queue.enqueue(
        NOTIFICATION_DISPATCH, {"priority": "HIGH"}, priority="HIGH", max_attempts=3, timeout_ms=5000
    )

    pipe = client.pipeline.return_value
    key, document = pipe.set.call_args.args
    assert key == f"{PREFIX}:job:{job_id}"
    assert json.loads(document)["state"] == "DELAYED"
    pipe.hset.assert_called_once_with(f"{PREFIX}:ranks", job_id, 2)
    pipe.zadd.assert_called_once_with(f"{PREFIX}:delayed", {job_id: 1_001_000})
    pipe.execute.assert_awaited_once()


async def test_rejected_job_is_stored_as_failed(queue, client):
    def reject(job):
        raise ValidationError("Missing required notification identifiers")

    queue.register_admission(NOTIFICATION_DISPATCH, reject)

    job_id = await queue.enqueue(
        NOTIFICATION_DISPATCH, {}, priority="HIGH", max_attempts=3, timeout_ms=5000
    )

    pipe = client.pipeline.return_value
    document = json.loads(pipe.set.call_args.args[1])
    assert document["id"] == job_id
    assert document["state"] == "FAILED"
    assert document["attempts_made"] == 1
    assert pipe.set.call_args.kwargs == {"ex": 1000}
    pipe.hincrby.assert_called_once_with(f"{PREFIX}:finished", "FAILED", 1)
    pipe.zadd.assert_not_called()


async def test_unreachable_broker_raises_queue_unavailable(queue, client):
    client.pipeline.return_value.execute.side_effect = RedisConnectionError("refused")

    with pytest.raises(QueueUnavailableError):
        await queue.enqueue(
            NOTIFICATION_DISPATCH, {}, priority="URGENT", max_attempts=3, timeout_ms=5000
        )


async def test_claim_leases_the_job_returned_by_the_script(queue, client, scripts):
    scripts[CLAIM_SCRIPT].return_value = "job-1"
    client.get.return_value = json.dumps(_job().to_dict())

    job = await queue.claim("w1", 2000)

    assert job.state is JobState.PROCESSING
    assert job.started_at == NOW
    assert job.lease_token.startswith("w1:")
    assert job.lease_expires_at == NOW + 2

    call = scripts[CLAIM_SCRIPT].await_args.kwargs
    assert call["keys"] == [
        f"{PREFIX}:delayed",
        f"{PREFIX}:ranks",
        f"{PREFIX}:active",
        f"{PREFIX}:leases",
        f"{PREFIX}:ready:3",
        f"{PREFIX}:ready:2",
        f"{PREFIX}:ready:1",
        f"{PREFIX}:ready:0",
    ]
    assert call["args"][:2] == [1_000_000, 1_002_000]
    assert call["args"][3:] == ["3", "2", "1", "0"]
    stored = json.loads(client.set.await_args.args[1])
    assert stored["lease_token"] == job.lease_token


async def test_claim_returns_none_when_nothing_is_due(queue, client, scripts):
    scripts[CLAIM_SCRIPT].return_value = None

    assert await queue.claim("w1", 2000) is None
    client.get.assert_not_awaited()


async def test_claim_without_a_document_releases_the_lease(queue, client, scripts):
    scripts[CLAIM_SCRIPT].return_value = "job-1"

    assert await queue.claim("w1", 2000) is None

    pipe = client.pipeline.return_value
    pipe.zrem.assert_called_once_with(f"{PREFIX}:active", "job-1")
    pipe.hdel.assert_called_once_with(f"{PREFIX}:leases", "job-1")
    client.set.assert_not_awaited()


def test_queue_keys_share_one_hash_tag(queue):
    for key in (queue._key("delayed"), queue._key("ready", "3"), queue._key("job", "job-1")):
        assert key.split(":")[2] == "{notifications}"


async def test_complete_settles_with_the_lease_token(queue, scripts):
    scripts[SETTLE_SCRIPT].return_value = 1

    await queue.complete(_leased(), "n-1")

    token, job_id, document, mode, _, keep = _settle_args(scripts)
    assert (token, job_id, mode, keep) == ("w1:abc", "job-1", "COMPLETED", 1000)
    stored = json.loads(document)
    assert stored["state"] == "COMPLETED"
    assert stored["attempts_made"] == 1
    assert stored["result"] == "n-1"
    assert stored["lease_token"] is None


async def test_retry_schedules_the_next_attempt(queue, scripts):
    scripts[SETTLE_SCRIPT].return_value = 1

    await queue.retry(_leased(), 250, "database is locked", {"metadata": {"retryCount": 1}})

    _, _, document, mode, ready_at_ms, _ = _settle_args(scripts)
    stored = json.loads(document)
    assert mode == "retry"
    assert ready_at_ms == 1_000_250
    assert stored["state"] == "DELAYED"
    assert stored["last_backoff_ms"] == 250
    assert stored["payload"] == {"metadata": {"retryCount": 1}}


async def test_retry_on_the_last_attempt_fails_the_job(queue, scripts):
    scripts[SETTLE_SCRIPT].return_value = 1

    await queue.retry(_leased(attempts_made=2), 250, "database is locked")

    assert _settle_args(scripts)[3] == "FAILED"


async def test_settle_without_the_lease_is_ignored(queue, scripts, caplog):
    scripts[SETTLE_SCRIPT].return_value = 0

    await queue.fail(_leased(), "boom")

    assert "lease no longer held" in caplog.text


async def test_renew_refuses_once_the_job_timed_out(queue, scripts):
    scripts[RENEW_SCRIPT].return_value = 1

    assert await queue.renew(_leased(), 2000) is True
    assert await queue.renew(_leased(started_at=NOW - 6), 2000) is False
    assert scripts[RENEW_SCRIPT].await_count == 1


async def test_requeue_stalled_moves_expired_jobs_back_to_delayed(queue, client, scripts):
    client.zrangebyscore.return_value = ["job-1"]
    scripts[RECLAIM_SCRIPT].return_value = 1
    client.get.return_value = json.dumps(_leased().to_dict())

    requeued = await queue.requeue_stalled(RetryPolicy(base_delay_ms=100, jitter_ratio=0))

    assert requeued == ["job-1"]
    pipe = client.pipeline.return_value
    stored = json.loads(pipe.set.call_args.args[1])
    assert stored["state"] == "DELAYED"
    assert stored["attempts_made"] == 1
    pipe.zadd.assert_called_once_with(f"{PREFIX}:delayed", {"job-1": 1_000_100})


async def test_counts_combine_indexes(queue, client):
    client.pipeline.return_value.execute.return_value = [1, 2, 3, {"COMPLETED": "4"}, 0, 1, 0, 0]

    counts = await queue.counts()

    assert counts["ENQUEUED"] == 2
    assert counts["DELAYED"] == 2
    assert counts["PROCESSING"] == 3
    assert counts["COMPLETED"] == 4
    assert counts["FAILED"] == 0
    assert await queue.has_pending() is True


async def test_close_releases_the_client(queue, client):
    await queue.close()

    client.aclose.assert_awaited_once()


async def test_requeue_stalled_returns_a_lease_that_never_started(queue, client, scripts):
    client.zrangebyscore.return_value = ["job-1"]
    scripts[RECLAIM_SCRIPT].return_value = 1
    client.get.return_value = json.dumps(_job(attempts_made=1).to_dict())

    requeued = await queue.requeue_stalled(RetryPolicy(base_delay_ms=100, jitter_ratio=0))

    assert requeued == ["job-1"]
    client.zadd.assert_awaited_once_with(f"{PREFIX}:delayed", {"job-1": 1_000_000})
    client.pipeline.return_value.set.assert_not_called()
    reclaim = scripts[RECLAIM_SCRIPT].await_args.kwargs
    assert reclaim["keys"] == [f"{PREFIX}:active", f"{PREFIX}:leases"]


async def test_requeue_stalled_skips_jobs_already_finished(queue, client, scripts):
    client.zrangebyscore.return_value = ["job-1"]
    scripts[RECLAIM_SCRIPT].return_value = 1
    client.get.return_value = json.dumps(_job(state=JobState.COMPLETED).to_dict())

    assert await queue.requeue_stalled(RetryPolicy()) == []
    client.zadd.assert_not_awaited()
    client.pipeline.return_value.execute.assert_not_awaited()


async def test_stalled_job_on_its_last_attempt_is_logged_as_failed(queue, client, scripts, caplog):
    client.zrangebyscore.return_value = ["job-1"]
    scripts[RECLAIM_SCRIPT].return_value = 1
    client.get.return_value = json.dumps(_leased(attempts_made=2).to_dict())

    with caplog.at_level(logging.ERROR, logger="notifyhub.infrastructure.queue.redis_queue"):
        await queue.requeue_stalled(RetryPolicy())

    stored = json.loads(client.pipeline.return_value.set.call_args.args[1])
    assert stored["state"] == "FAILED"
    (record,) = caplog.records
    assert record.job_id == "job-1"
    assert record.attempts == 3
    assert record.last_error == "Job stalled: lease expired before acknowledgement"
    assert record.payload == {"priority": "HIGH"}
    assert record.correlation_id
