# User value: This file keeps the full failure context of exhausted jobs so ops can inspect and drain them.
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from digitizer.contract import DEAD_LETTER_JOB_TYPE, DEAD_LETTER_RETENTION_MS, JOB_STATE_WAITING
from digitizer.job_queue import DurableQueue
from digitizer.models import DeadLetterEntry, Job, JobOptions

logger = logging.getLogger("digitizer.dead_letter")


def build_dead_letter_entry(
    *,
    job: Job,
    failed_reason: str,
    stacktrace: List[str],
    error_code: str,
    failed_at: Optional[datetime] = None,
) -> DeadLetterEntry:
    return DeadLetterEntry(
        original_job_id=job.id,
        payload=job.payload,
        failed_reason=failed_reason or job.failed_reason or "Processing failed",
        stacktrace=list(stacktrace),
        attempts_made=max(1, job.attempts_made),
        failed_at=(failed_at or datetime.now(timezone.utc)).isoformat(),
        queue_name=job.queue_name,
        error_code=error_code,
    )


class DeadLetterRouter:
    """
    Pushes dead letter entries into the DLQ and serves admin tooling.

    Entries are enqueued with the original job id as their own id, so
    pushing the same failure twice leaves a single entry.
    Every routed id is also remembered in a `routed` set, so draining or
    purging an entry does not let reconciliation push it again.
    """

    def __init__(self, dlq: DurableQueue):
        if dlq.max_attempts != 1:
            raise ValueError("dead letter queue must use a single attempt")
        self.dlq = dlq
        self.routed_key = f"{dlq.keys.prefix}:routed"

    async def route(self, entry: DeadLetterEntry) -> str:
        entry_id = await self.dlq.enqueue(
            DEAD_LETTER_JOB_TYPE,
            entry.to_dict(),
            JobOptions(job_id=entry.original_job_id),
        )
        now = self.dlq._now_ms()
        pipe = self.dlq.redis.pipeline()
        pipe.zadd(self.routed_key, {entry.original_job_id: now})
        pipe.zremrangebyscore(self.routed_key, 0, now - DEAD_LETTER_RETENTION_MS)
        await pipe.execute()
        logger.error(
            "dead_letter_routed dlq=%s job_id=%s attempts=%s error_code=%s reason=%s",
            self.dlq.name,
            entry.original_job_id,
            entry.attempts_made,
            entry.error_code,
            entry.failed_reason,
        )
        return entry_id

    async def exists(self, original_job_id: str) -> bool:
        """True once an entry for this job was routed, even if it was drained since."""
        return await self.dlq.redis.zscore(self.routed_key, original_job_id) is not None

    async def list_entries(self, offset: int = 0, limit: int = 50) -> List[DeadLetterEntry]:
        jobs = await self.dlq.get_jobs(JOB_STATE_WAITING, offset=offset, limit=limit)
        return [DeadLetterEntry.from_dict(job.payload) for job in jobs]

    async def get_entry(self, original_job_id: str) -> Optional[DeadLetterEntry]:
        job = await self.dlq.get_job(original_job_id)
        if job is None:
            return None
        return DeadLetterEntry.from_dict(job.payload)

    async def drain_next(self) -> Optional[DeadLetterEntry]:
        """Take the oldest entry off the DLQ and mark it handled."""
        job = await self.dlq.claim_next()
        if job is None:
            return None
        await self.dlq.complete(job.id, job.lease_token, {"drained": True})
        logger.info("dead_letter_drained dlq=%s job_id=%s", self.dlq.name, job.id)
        return DeadLetterEntry.from_dict(job.payload)

    async def purge(self, original_job_id: str) -> None:
        await self.dlq.remove(original_job_id)
        logger.info("dead_letter_purged dlq=%s job_id=%s", self.dlq.name, original_job_id)
