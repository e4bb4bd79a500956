import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as aioredis

from digitizer.contract import (
    JOB_STATE_ACTIVE,
    JOB_STATE_COMPLETED,
    JOB_STATE_DELAYED,
    JOB_STATE_FAILED,
    JOB_STATE_WAITING,
)
from digitizer.errors import ConflictError, LeaseLostError, NotFoundError
from digitizer.models import Job, JobOptions
from digitizer.utils.retry_policy import exponential_backoff_ms

logger = logging.getLogger("digitizer.queue")

STALLED_REASON = "job stalled more than allowable limit"

# Returned by the claim transaction when the popped id had no job hash.
_ORPHAN = object()


class QueueKeys:
    """
    Redis key names for one queue.

    wait      LIST  job ids ready to run, claimed from the right
    active    ZSET  job id -> lease deadline (ms)
    delayed   ZSET  job id -> ready-at (ms)
    completed ZSET  job id -> finished-on (ms)
    failed    ZSET  job id -> finished-on (ms)
    job:<id>  HASH  the job itself
    """

    def __init__(self, queue_name: str):
        self.prefix = f"queue:{queue_name}"
        self.wait = f"{self.prefix}:wait"
        self.active = f"{self.prefix}:active"
        self.delayed = f"{self.prefix}:delayed"
        self.completed = f"{self.prefix}:completed"
        self.failed = f"{self.prefix}:failed"

    def job(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"


@dataclass(frozen=True)
class RetentionPolicy:
    max_age_ms: Optional[int] = None
    max_count: Optional[int] = None


@dataclass(frozen=True)
class FailureOutcome:
    job_id: str
    state: str
    attempts_made: int
    max_attempts: int
    delay_ms: int = 0

    @property
    def final(self) -> bool:
        return self.state == JOB_STATE_FAILED


class DurableQueue:
    """
    Redis-backed job queue with lease-based claiming and delayed retries.

    Design rules:
    - Owns job STATE, not job LOGIC
    - Payload is opaque
    - At-least-once delivery: an expired lease puts the job back in line
    - Every state move is a single WATCH/MULTI transaction
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        name: str,
        *,
        max_attempts: int = 3,
        backoff_delay_ms: int = 2000,
        lease_ms: int = 30000,
        poll_interval: float = 0.5,
        remove_on_complete: RetentionPolicy = RetentionPolicy(),
        remove_on_fail: RetentionPolicy = RetentionPolicy(),
        clock: Callable[[], float] = time.time,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.redis = redis_client
        self.name = name
        self.keys = QueueKeys(name)
        self.max_attempts = max_attempts
        self.backoff_delay_ms = backoff_delay_ms
        self.lease_ms = lease_ms
        self.poll_interval = poll_interval
        self.remove_on_complete = remove_on_complete
        self.remove_on_fail = remove_on_fail
        self.clock = clock

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    # ------------------------------------------------------------------
    # ENQUEUE
    # ------------------------------------------------------------------

    async def enqueue(self, job_type: str, payload: Dict[str, Any], options: Optional[JobOptions] = None) -> str:
        """
        Add a job and return its id.

        With options.job_id set, enqueueing an id that already exists is a
        no-op and returns that id.
        """
        options = options or JobOptions()
        job_id = options.job_id or str(uuid.uuid4())
        job_key = self.keys.job(job_id)
        now = self._now_ms()
        delayed = options.delay_ms > 0

        job = Job(
            id=job_id,
            queue_name=self.name,
            name=job_type,
            payload=payload,
            state=JOB_STATE_DELAYED if delayed else JOB_STATE_WAITING,
            max_attempts=self.max_attempts,
            backoff_delay_ms=self.backoff_delay_ms,
            created_at=now,
        )

        async def _add(pipe):
            if await pipe.exists(job_key):
                return False
            pipe.multi()
            pipe.hset(job_key, mapping=job.to_redis())
            if delayed:
                pipe.zadd(self.keys.delayed, {job_id: now + options.delay_ms})
            else:
                pipe.lpush(self.keys.wait, job_id)
            return True

        added = await self.redis.transaction(_add, job_key, value_from_callable=True)
        if added:
            logger.info("queue_job_enqueued queue=%s job_id=%s job_type=%s delayed=%s", self.name, job_id, job_type, delayed)
        else:
            logger.info("queue_job_duplicate queue=%s job_id=%s", self.name, job_id)
        return job_id

    # ------------------------------------------------------------------
    # CLAIM
    # ------------------------------------------------------------------

    async def claim_next(self, timeout: float = 0.0) -> Optional[Job]:
        """
        Claim at most one job, polling until `timeout` seconds have passed.

        Due delayed jobs are promoted and expired leases recovered before
        each attempt. The returned job is `active` and carries a fresh lease
        token.
        """
        deadline = time.monotonic() + timeout
        while True:
            await self.promote_delayed()
            await self.requeue_stalled()

            job = await self._claim_once()
            while job is _ORPHAN:
                job = await self._claim_once()
            if job is not None:
                return job

            if time.monotonic() >= deadline:
                return None
            await asyncio.sleep(self.poll_interval)

    async def _claim_once(self):
        token = uuid.uuid4().hex

        async def _claim(pipe):
            job_id = await pipe.lindex(self.keys.wait, -1)
            if job_id is None:
                return None
            job_key = self.keys.job(job_id)
            await pipe.watch(job_key)
            raw = await pipe.hgetall(job_key)
            now = self._now_ms()

            pipe.multi()
            pipe.rpop(self.keys.wait)
            if not raw:
                return _ORPHAN

            lease_expires_at = now + self.lease_ms
            updates = {
                "state": JOB_STATE_ACTIVE,
                "attempts_made": str(int(raw.get("attempts_made") or 0) + 1),
                "processed_on": str(now),
                "lease_token": token,
                "lease_expires_at": str(lease_expires_at),
            }
            pipe.hset(job_key, mapping=updates)
            pipe.zadd(self.keys.active, {job_id: lease_expires_at})
            claimed = dict(raw)
            claimed.update(updates)
            return Job.from_redis(claimed)

        job = await self.redis.transaction(_claim, self.keys.wait, value_from_callable=True)
        if isinstance(job, Job):
            logger.info(
                "queue_job_claimed queue=%s job_id=%s attempt=%s/%s",
                self.name,
                job.id,
                job.attempts_made,
                job.max_attempts,
            )
        elif job is _ORPHAN:
            logger.warning("queue_orphan_id_dropped queue=%s", self.name)
        return job

    async def _load_leased(self, pipe, job_id: str, token: str) -> Dict[str, str]:
        raw = await pipe.hgetall(self.keys.job(job_id))
        if not raw or raw.get("state") != JOB_STATE_ACTIVE or raw.get("lease_token") != token:
            raise LeaseLostError(job_id)
        return raw

    async def extend_lease(self, job_id: str, token: str) -> int:
        job_key = self.keys.job(job_id)

        async def _extend(pipe):
            await self._load_leased(pipe, job_id, token)
            lease_expires_at = self._now_ms() + self.lease_ms
            pipe.multi()
            pipe.hset(job_key, "lease_expires_at", str(lease_expires_at))
            pipe.zadd(self.keys.active, {job_id: lease_expires_at})
            return lease_expires_at

        return await self.redis.transaction(_extend, job_key, value_from_callable=True)

    async def update_progress(self, job_id: str, token: str, progress: int) -> None:
        job_key = self.keys.job(job_id)
        value = max(0, min(100, int(progress)))

        async def _progress(pipe):
            await self._load_leased(pipe, job_id, token)
            pipe.multi()
            pipe.hset(job_key, "progress", str(value))

        await self.redis.transaction(_progress, job_key)

    # ------------------------------------------------------------------
    # FINALIZE
    # ------------------------------------------------------------------

    async def complete(self, job_id: str, token: str, return_value: Optional[Dict[str, Any]] = None) -> None:
        job_key = self.keys.job(job_id)

        async def _complete(pipe):
            await self._load_leased(pipe, job_id, token)
            now = self._now_ms()
            mapping = {"state": JOB_STATE_COMPLETED, "finished_on": str(now)}
            if return_value is not None:
                mapping["return_value"] = json.dumps(return_value, ensure_ascii=False)
            pipe.multi()
            pipe.hset(job_key, mapping=mapping)
            pipe.hdel(job_key, "lease_token", "lease_expires_at")
            pipe.zrem(self.keys.active, job_id)
            pipe.zadd(self.keys.completed, {job_id: now})

        await self.redis.transaction(_complete, job_key)
        logger.info("queue_job_completed queue=%s job_id=%s", self.name, job_id)
        await self._trim(self.keys.completed, self.remove_on_complete)

    async def fail(
        self,
        job_id: str,
        token: str,
        reason: str,
        stacktrace: Optional[str] = None,
        *,
        retry: bool = True,
    ) -> FailureOutcome:
        """
        Record a failed attempt.

        The job is moved to `delayed` with exponential backoff while attempts
        remain and `retry` is set; otherwise it is finalized `failed`.
        """
        job_key = self.keys.job(job_id)

        async def _fail(pipe):
            raw = await self._load_leased(pipe, job_id, token)
            job = Job.from_redis(raw)
            now = self._now_ms()
            stack = list(job.stacktrace)
            if stacktrace:
                stack.append(stacktrace)
            mapping = {
                "failed_reason": reason,
                "stacktrace": json.dumps(stack, ensure_ascii=False),
            }

            pipe.multi()
            pipe.hdel(job_key, "lease_token", "lease_expires_at")
            pipe.zrem(self.keys.active, job_id)

            if retry and job.attempts_made < job.max_attempts:
                delay = exponential_backoff_ms(job.backoff_delay_ms, job.attempts_made)
                mapping["state"] = JOB_STATE_DELAYED
                pipe.hset(job_key, mapping=mapping)
                pipe.zadd(self.keys.delayed, {job_id: now + delay})
                return FailureOutcome(job_id, JOB_STATE_DELAYED, job.attempts_made, job.max_attempts, delay)

            mapping["state"] = JOB_STATE_FAILED
            mapping["finished_on"] = str(now)
            pipe.hset(job_key, mapping=mapping)
            pipe.zadd(self.keys.failed, {job_id: now})
            return FailureOutcome(job_id, JOB_STATE_FAILED, job.attempts_made, job.max_attempts)

        outcome = await self.redis.transaction(_fail, job_key, value_from_callable=True)
        if outcome.final:
            logger.warning(
                "queue_job_failed queue=%s job_id=%s attempts=%s/%s reason=%s",
                self.name,
                job_id,
                outcome.attempts_made,
                outcome.max_attempts,
                reason,
            )
            await self._trim(self.keys.failed, self.remove_on_fail)
        else:
            logger.info(
                "queue_job_retry_scheduled queue=%s job_id=%s attempts=%s/%s delay_ms=%s",
                self.name,
                job_id,
                outcome.attempts_made,
                outcome.max_attempts,
                outcome.delay_ms,
            )
        return outcome

    # ------------------------------------------------------------------
    # SCHEDULING
    # ------------------------------------------------------------------

    async def promote_delayed(self) -> int:
        """Move delayed jobs whose time has come back to `waiting`."""
        now = self._now_ms()
        due = await self.redis.zrangebyscore(self.keys.delayed, 0, now)
        moved = 0
        for job_id in due:
            job_key = self.keys.job(job_id)

            async def _promote(pipe, job_id=job_id, job_key=job_key):
                ready_at = await pipe.zscore(self.keys.delayed, job_id)
                if ready_at is None or ready_at > now:
                    return False
                pipe.multi()
                pipe.zrem(self.keys.delayed, job_id)
                pipe.hset(job_key, "state", JOB_STATE_WAITING)
                pipe.lpush(self.keys.wait, job_id)
                return True

            if await self.redis.transaction(_promote, self.keys.delayed, job_key, value_from_callable=True):
                moved += 1
        return moved

    async def requeue_stalled(self) -> int:
        """
        Recover jobs whose lease expired without completion.

        A stalled job with attempts left goes back to the front of the line;
        one that already used every attempt is finalized `failed`.
        """
        now = self._now_ms()
        expired = await self.redis.zrangebyscore(self.keys.active, 0, now)
        moved = 0
        for job_id in expired:
            job_key = self.keys.job(job_id)

            async def _recover(pipe, job_id=job_id, job_key=job_key):
                deadline = await pipe.zscore(self.keys.active, job_id)
                if deadline is None or deadline > now:
                    return None
                raw = await pipe.hgetall(job_key)
                pipe.multi()
                pipe.zrem(self.keys.active, job_id)
                if not raw:
                    return None
                pipe.hdel(job_key, "lease_token", "lease_expires_at")
                attempts = int(raw.get("attempts_made") or 0)
                if attempts < int(raw.get("max_attempts") or 1):
                    pipe.hset(job_key, "state", JOB_STATE_WAITING)
                    pipe.rpush(self.keys.wait, job_id)
                    return JOB_STATE_WAITING
                pipe.hset(
                    job_key,
                    mapping={"state": JOB_STATE_FAILED, "failed_reason": STALLED_REASON, "finished_on": str(now)},
                )
                pipe.zadd(self.keys.failed, {job_id: now})
                return JOB_STATE_FAILED

            result = await self.redis.transaction(_recover, self.keys.active, job_key, value_from_callable=True)
            if result is not None:
                moved += 1
                logger.warning("queue_stalled_job_recovered queue=%s job_id=%s new_state=%s", self.name, job_id, result)
        return moved

    # ------------------------------------------------------------------
    # INSPECTION / ADMIN
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Optional[Job]:
        raw = await self.redis.hgetall(self.keys.job(job_id))
        if not raw:
            return None
        return Job.from_redis(raw)

    async def get_state(self, job_id: str) -> Optional[str]:
        return await self.redis.hget(self.keys.job(job_id), "state")

    async def remove(self, job_id: str) -> None:
        """Delete a job in any state except `active`."""
        job_key = self.keys.job(job_id)

        async def _remove(pipe):
            state = await pipe.hget(job_key, "state")
            if state is None:
                raise NotFoundError("Job", job_id)
            if state == JOB_STATE_ACTIVE:
                raise ConflictError("Cannot delete a job that is currently being processed.")
            pipe.multi()
            pipe.delete(job_key)
            pipe.lrem(self.keys.wait, 0, job_id)
            pipe.zrem(self.keys.delayed, job_id)
            pipe.zrem(self.keys.completed, job_id)
            pipe.zrem(self.keys.failed, job_id)

        await self.redis.transaction(_remove, job_key)
        logger.info("queue_job_removed queue=%s job_id=%s", self.name, job_id)

    async def get_jobs(self, state: str, offset: int = 0, limit: int = 50) -> List[Job]:
        """Jobs in one state; `waiting` is oldest first, the rest newest first."""
        end = offset + max(1, limit) - 1
        if state == JOB_STATE_WAITING:
            total = await self.redis.llen(self.keys.wait)
            # Oldest entries sit at the right end of the list.
            start_idx = max(0, total - 1 - end)
            stop_idx = total - 1 - offset
            ids = list(reversed(await self.redis.lrange(self.keys.wait, start_idx, stop_idx))) if stop_idx >= 0 else []
        else:
            zkey = {
                JOB_STATE_ACTIVE: self.keys.active,
                JOB_STATE_DELAYED: self.keys.delayed,
                JOB_STATE_COMPLETED: self.keys.completed,
                JOB_STATE_FAILED: self.keys.failed,
            }.get(state)
            if zkey is None:
                raise ValueError(f"Unknown job state: {state}")
            ids = await self.redis.zrevrange(zkey, offset, end)

        jobs = []
        for job_id in ids:
            job = await self.get_job(job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    async def counts(self) -> Dict[str, int]:
        pipe = self.redis.pipeline()
        pipe.llen(self.keys.wait)
        pipe.zcard(self.keys.delayed)
        pipe.zcard(self.keys.active)
        pipe.zcard(self.keys.completed)
        pipe.zcard(self.keys.failed)
        waiting, delayed, active, completed, failed = await pipe.execute()
        return {
            JOB_STATE_WAITING: waiting,
            JOB_STATE_DELAYED: delayed,
            JOB_STATE_ACTIVE: active,
            JOB_STATE_COMPLETED: completed,
            JOB_STATE_FAILED: failed,
        }

    async def _trim(self, zkey: str, policy: RetentionPolicy) -> int:
        ids: List[str] = []
        if policy.max_age_ms is not None:
            cutoff = self._now_ms() - policy.max_age_ms
            ids.extend(await self.redis.zrangebyscore(zkey, 0, cutoff))
        if policy.max_count is not None:
            total = await self.redis.zcard(zkey)
            overflow = total - policy.max_count
            if overflow > 0:
                ids.extend(await self.redis.zrange(zkey, 0, overflow - 1))
        ids = list(dict.fromkeys(ids))
        if not ids:
            return 0

        pipe = self.redis.pipeline()
        for job_id in ids:
            pipe.zrem(zkey, job_id)
            pipe.delete(self.keys.job(job_id))
        await pipe.execute()
        logger.info("queue_retention_trimmed queue=%s key=%s removed=%s", self.name, zkey, len(ids))
        return len(ids)
