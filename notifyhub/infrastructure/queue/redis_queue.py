"""Redis backed dispatch queue shared by every service instance.

Layout under ``<prefix>``:

* ``job:<id>``      JSON document of the job (expires once finished)
* ``ranks``         hash of job id to priority rank
* ``delayed``       zset of waiting job ids scored by ready time (ms)
* ``ready:<rank>``  zset of due job ids per rank, scored by ready time (ms)
* ``active``        zset of leased job ids scored by lease expiry (ms)
* ``leases``        hash of leased job id to the token of the worker holding it
* ``finished``      hash counting COMPLETED and FAILED jobs

Index moves happen in Lua scripts so a job is leased to one worker at a time.
Scripts only touch keys passed through ``KEYS`` and the prefix carries a hash
tag, so every key of one queue lands in the same cluster slot.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Callable
from uuid import uuid4

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from notifyhub.domain.entities import Job, JobState
from notifyhub.domain.errors import QueueUnavailableError
from notifyhub.domain.policies import PriorityPolicy, RetryPolicy

from .base import DispatchQueue, log_permanent_failure

logger = logging.getLogger(__name__)

# KEYS: delayed, ranks, active, leases, ready:<rank>... (most urgent first)
# ARGV: now, lease expiry, token, then the rank of each ready key
CLAIM_SCRIPT = """
local ready = {}
for i = 5, #KEYS do
  ready[ARGV[i - 1]] = KEYS[i]
end
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'WITHSCORES')
for i = 1, #due, 2 do
  local id = due[i]
  local rank = redis.call('HGET', KEYS[2], id) or ''
  redis.call('ZREM', KEYS[1], id)
  redis.call('ZADD', ready[rank] or KEYS[#KEYS], due[i + 1], id)
end
for i = 5, #KEYS do
  local popped = redis.call('ZPOPMIN', KEYS[i])
  if #popped > 0 then
    local id = popped[1]
    redis.call('ZADD', KEYS[3], ARGV[2], id)
    redis.call('HSET', KEYS[4], id, ARGV[3])
    return id
  end
end
return false
"""

SETTLE_SCRIPT = """
if redis.call('HGET', KEYS[1], ARGV[2]) ~= ARGV[1] then
  return 0
end
redis.call('HDEL', KEYS[1], ARGV[2])
redis.call('ZREM', KEYS[2], ARGV[2])
if ARGV[4] == 'retry' then
  redis.call('SET', KEYS[3], ARGV[3])
  redis.call('ZADD', KEYS[4], ARGV[5], ARGV[2])
else
  redis.call('SET', KEYS[3], ARGV[3], 'EX', ARGV[6])
  redis.call('HDEL', KEYS[6], ARGV[2])
  redis.call('HINCRBY', KEYS[5], ARGV[4], 1)
end
return 1
"""

RENEW_SCRIPT = """
if redis.call('HGET', KEYS[1], ARGV[3]) ~= ARGV[1] then
  return 0
end
redis.call('ZADD', KEYS[2], 'XX', ARGV[2], ARGV[3])
return 1
"""

RECLAIM_SCRIPT = """
local score = redis.call('ZSCORE', KEYS[1], ARGV[1])
if not score or tonumber(score) > tonumber(ARGV[2]) then
  return 0
end
redis.call('ZREM', KEYS[1], ARGV[1])
redis.call('HDEL', KEYS[2], ARGV[1])
return 1
"""


def _ms(seconds: float) -> int:
    return int(seconds * 1000)


class RedisDispatchQueue(DispatchQueue):
    def __init__(
        self,
        client: redis.Redis,
        *,
        name: str = "notifications",
        priority_policy: PriorityPolicy | None = None,
        keep_finished_seconds: int = 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(priority_policy)
        self._redis = client
        self._prefix = f"notifyhub:queue:{{{name}}}"
        self._keep_finished = max(keep_finished_seconds, 1)
        self._clock = clock
        self._claim = client.register_script(CLAIM_SCRIPT)
        self._settle = client.register_script(SETTLE_SCRIPT)
        self._renew = client.register_script(RENEW_SCRIPT)
        self._reclaim = client.register_script(RECLAIM_SCRIPT)

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisDispatchQueue":
        client = redis.from_url(url, encoding="utf-8", decode_responses=True)
        return cls(client, **kwargs)

    def _key(self, *parts: str) -> str:
        return ":".join((self._prefix, *parts))

    @contextmanager
    def _unavailable_as_error(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.error("Dispatch queue %s failed, broker unreachable: %s", operation, exc)
            raise QueueUnavailableError(f"Dispatch queue unavailable during {operation}") from exc

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        priority: str,
        max_attempts: int,
        timeout_ms: int,
    ) -> str:
        now = self._clock()
        job = Job(
            id=uuid4().hex,
            job_type=job_type,
            payload=dict(payload),
            priority=priority,
            max_attempts=max_attempts,
            timeout_ms=timeout_ms,
            enqueued_at=now,
        )
        delay_ms = self._admit(job)

        pipe = self._redis.pipeline(transaction=True)
        if delay_ms is None:
            pipe.set(self._key("job", job.id), json.dumps(job.to_dict()), ex=self._keep_finished)
            pipe.hincrby(self._key("finished"), JobState.FAILED.value, 1)
        else:
            if delay_ms > 0:
                job.transition(JobState.DELAYED)
            job.ready_at = now + delay_ms / 1000
            pipe.set(self._key("job", job.id), json.dumps(job.to_dict()))
            pipe.hset(self._key("ranks"), job.id, self._rank(priority))
            pipe.zadd(self._key("delayed"), {job.id: _ms(job.ready_at)})
        with self._unavailable_as_error("enqueue"):
            await pipe.execute()
        logger.debug("Enqueued %s job %s (priority %s)", job_type, job.id, priority)
        return job.id

    async def claim(self, worker_id: str, lock_ms: int) -> Job | None:
        now = self._clock()
        token = f"{worker_id}:{uuid4().hex}"
        ranks = [str(rank) for rank in self.priority_policy.ranks]
        with self._unavailable_as_error("claim"):
            job_id = await self._claim(
                keys=[
                    self._key("delayed"),
                    self._key("ranks"),
                    self._key("active"),
                    self._key("leases"),
                    *(self._key("ready", rank) for rank in ranks),
                ],
                args=[_ms(now), _ms(now) + lock_ms, token, *ranks],
            )
            if not job_id:
                return None
            job = await self._load(job_id)
            if job is None:
                logger.warning("Claimed job %s has no document; dropping it", job_id)
                pipe = self._redis.pipeline(transaction=True)
                pipe.zrem(self._key("active"), job_id)
                pipe.hdel(self._key("leases"), job_id)
                await pipe.execute()
                return None
            job.transition(JobState.PROCESSING)
            job.started_at = now
            job.lease_token = token
            job.lease_expires_at = now + lock_ms / 1000
            await self._redis.set(self._key("job", job.id), json.dumps(job.to_dict()))
        return job

    async def renew(self, job: Job, lock_ms: int) -> bool:
        now = self._clock()
        if job.started_at is not None and now > job.started_at + job.timeout_ms / 1000:
            return False
        with self._unavailable_as_error("renew"):
            renewed = await self._renew(
                keys=[self._key("leases"), self._key("active")],
                args=[job.lease_token or "", _ms(now) + lock_ms, job.id],
            )
        if renewed:
            job.lease_expires_at = now + lock_ms / 1000
        return bool(renewed)

    async def complete(self, job: Job, result: Any = None) -> None:
        job.attempts_made += 1
        job.result = result
        await self._settle_terminal(job, JobState.COMPLETED)

    async def retry(
        self,
        job: Job,
        delay_ms: int,
        error: str,
        payload: dict[str, Any] | None = None,
    ) -> None:
        job.attempts_made += 1
        job.last_error = error
        if payload is not None:
            job.payload = dict(payload)
        if job.attempts_made >= job.max_attempts:
            await self._settle_terminal(job, JobState.FAILED)
            return
        token = job.lease_token or ""
        ready_at = self._prepare_requeue(job, delay_ms)
        with self._unavailable_as_error("retry"):
            await self._run_settle(job, token, "retry", ready_at_ms=_ms(ready_at))

    async def fail(self, job: Job, error: str) -> None:
        job.attempts_made += 1
        job.last_error = error
        await self._settle_terminal(job, JobState.FAILED)

    async def requeue_stalled(self, retry_policy: RetryPolicy) -> list[str]:
        now = self._clock()
        requeued: list[str] = []
        with self._unavailable_as_error("requeue_stalled"):
            candidates = await self._redis.zrangebyscore(self._key("active"), "-inf", _ms(now))
            for job_id in candidates:
                reclaimed = await self._reclaim(
                    keys=[self._key("active"), self._key("leases")],
                    args=[job_id, _ms(now)],
                )
                if not reclaimed:
                    continue
                job = await self._load(job_id)
                if job is None or job.state.is_terminal:
                    continue
                if job.state is not JobState.PROCESSING:
                    # Lease granted but the claim never recorded the start.
                    logger.warning(
                        "Job %s was leased but never started; returning it to the queue", job_id
                    )
                    await self._redis.zadd(self._key("delayed"), {job_id: _ms(now)})
                    requeued.append(job_id)
                    continue
                job.attempts_made += 1
                job.last_error = "Job stalled: lease expired before acknowledgement"
                requeued.append(job_id)
                if job.attempts_made >= job.max_attempts:
                    log_permanent_failure(logger, job, job.attempts_made, job.last_error)
                    job.lease_token = None
                    job.lease_expires_at = None
                    job.finished_at = now
                    job.transition(JobState.FAILED)
                    pipe = self._redis.pipeline(transaction=True)
                    pipe.set(self._key("job", job_id), json.dumps(job.to_dict()), ex=self._keep_finished)
                    pipe.hdel(self._key("ranks"), job_id)
                    pipe.hincrby(self._key("finished"), JobState.FAILED.value, 1)
                    await pipe.execute()
                    continue
                delay_ms = retry_policy.backoff_ms(job.attempts_made, job.last_backoff_ms)
                ready_at = self._prepare_requeue(job, delay_ms)
                logger.warning("Requeued stalled job %s (attempt %s)", job_id, job.attempts_made)
                pipe = self._redis.pipeline(transaction=True)
                pipe.set(self._key("job", job_id), json.dumps(job.to_dict()))
                pipe.zadd(self._key("delayed"), {job_id: _ms(ready_at)})
                await pipe.execute()
        return requeued

    async def get(self, job_id: str) -> Job | None:
        with self._unavailable_as_error("get"):
            return await self._load(job_id)

    async def counts(self) -> dict[str, int]:
        now_ms = _ms(self._clock())
        counts = {state.value: 0 for state in JobState}
        with self._unavailable_as_error("counts"):
            pipe = self._redis.pipeline(transaction=False)
            pipe.zcount(self._key("delayed"), "-inf", now_ms)
            pipe.zcount(self._key("delayed"), f"({now_ms}", "+inf")
            pipe.zcard(self._key("active"))
            pipe.hgetall(self._key("finished"))
            for rank in self.priority_policy.ranks:
                pipe.zcard(self._key("ready", str(rank)))
            due, delayed, active, finished, *ready = await pipe.execute()
        counts[JobState.ENQUEUED.value] = int(due) + sum(int(size) for size in ready)
        counts[JobState.DELAYED.value] = int(delayed)
        counts[JobState.PROCESSING.value] = int(active)
        for state, value in (finished or {}).items():
            counts[state] = int(value)
        return counts

    async def has_pending(self) -> bool:
        counts = await self.counts()
        return any(
            counts[state.value]
            for state in (JobState.ENQUEUED, JobState.DELAYED, JobState.PROCESSING)
        )

    async def close(self) -> None:
        await self._redis.aclose()

    async def _load(self, job_id: str) -> Job | None:
        raw = await self._redis.get(self._key("job", job_id))
        if raw is None:
            return None
        return Job.from_dict(json.loads(raw))

    def _prepare_requeue(self, job: Job, delay_ms: int) -> float:
        ready_at = self._clock() + delay_ms / 1000
        job.last_backoff_ms = delay_ms
        job.lease_token = None
        job.lease_expires_at = None
        job.ready_at = ready_at
        job.transition(JobState.RETRYING)
        job.transition(JobState.DELAYED)
        return ready_at

    async def _settle_terminal(self, job: Job, state: JobState) -> None:
        token = job.lease_token or ""
        job.lease_token = None
        job.lease_expires_at = None
        job.finished_at = self._clock()
        job.transition(state)
        with self._unavailable_as_error("settle"):
            await self._run_settle(job, token, state.value)

    async def _run_settle(self, job: Job, token: str, mode: str, *, ready_at_ms: int = 0) -> None:
        settled = await self._settle(
            keys=[
                self._key("leases"),
                self._key("active"),
                self._key("job", job.id),
                self._key("delayed"),
                self._key("finished"),
                self._key("ranks"),
            ],
            args=[token, job.id, json.dumps(job.to_dict()), mode, ready_at_ms, self._keep_finished],
        )
        if not settled:
            logger.warning("Ignoring update for job %s: lease no longer held", job.id)


__all__ = ["RedisDispatchQueue"]
