import unittest

import fakeredis

from digitizer.contract import (
    JOB_STATE_ACTIVE,
    JOB_STATE_COMPLETED,
    JOB_STATE_DELAYED,
    JOB_STATE_FAILED,
    JOB_STATE_WAITING,
)
from digitizer.errors import ConflictError, LeaseLostError, NotFoundError
from digitizer.job_queue import STALLED_REASON, DurableQueue, RetentionPolicy
from digitizer.models import JobOptions


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: int) -> None:
        self.now += ms / 1000.0


class DurableQueueUnitTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.redis = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
        self.clock = FakeClock()
        self.queue = DurableQueue(
            self.redis,
            "digitization",
            max_attempts=3,
            backoff_delay_ms=2000,
            lease_ms=30000,
            poll_interval=0.01,
            clock=self.clock,
        )

    async def asyncTearDown(self):
        await self.redis.aclose()

    async def test_enqueue_then_claim(self):
        job_id = await self.queue.enqueue("process-digitization", {"workRecordId": "r1"})
        self.assertEqual(await self.queue.get_state(job_id), JOB_STATE_WAITING)

        job = await self.queue.claim_next()

        self.assertEqual(job.id, job_id)
        self.assertEqual(job.state, JOB_STATE_ACTIVE)
        self.assertEqual(job.attempts_made, 1)
        self.assertEqual(job.payload, {"workRecordId": "r1"})
        self.assertTrue(job.lease_token)
        self.assertEqual(await self.queue.get_state(job_id), JOB_STATE_ACTIVE)

    async def test_claim_on_empty_queue_returns_none(self):
        self.assertIsNone(await self.queue.claim_next())

    async def test_jobs_are_claimed_oldest_first(self):
        first = await self.queue.enqueue("process-digitization", {"n": 1})
        second = await self.queue.enqueue("process-digitization", {"n": 2})

        self.assertEqual((await self.queue.claim_next()).id, first)
        self.assertEqual((await self.queue.claim_next()).id, second)

    async def test_enqueue_with_existing_id_is_a_noop(self):
        await self.queue.enqueue("process-digitization", {"n": 1}, JobOptions(job_id="r1"))
        again = await self.queue.enqueue("process-digitization", {"n": 2}, JobOptions(job_id="r1"))

        self.assertEqual(again, "r1")
        counts = await self.queue.counts()
        self.assertEqual(counts[JOB_STATE_WAITING], 1)
        self.assertEqual((await self.queue.get_job("r1")).payload, {"n": 1})

    async def test_delayed_enqueue_waits_for_its_time(self):
        await self.queue.enqueue("process-digitization", {}, JobOptions(job_id="later", delay_ms=5000))
        self.assertEqual(await self.queue.get_state("later"), JOB_STATE_DELAYED)
        self.assertIsNone(await self.queue.claim_next())

        self.clock.advance_ms(5000)
        self.assertEqual((await self.queue.claim_next()).id, "later")

    async def test_failed_attempts_back_off_exponentially_then_finalize(self):
        await self.queue.enqueue("process-digitization", {}, JobOptions(job_id="j"))

        job = await self.queue.claim_next()
        outcome = await self.queue.fail(job.id, job.lease_token, "boom", "trace-1")
        self.assertFalse(outcome.final)
        self.assertEqual(outcome.delay_ms, 2000)
        self.assertEqual(await self.queue.get_state("j"), JOB_STATE_DELAYED)

        # Never re-run before the computed delay.
        self.clock.advance_ms(1999)
        self.assertIsNone(await self.queue.claim_next())
        self.clock.advance_ms(1)
        job = await self.queue.claim_next()
        self.assertEqual(job.attempts_made, 2)

        outcome = await self.queue.fail(job.id, job.lease_token, "boom", "trace-2")
        self.assertEqual(outcome.delay_ms, 4000)
        self.clock.advance_ms(4000)
        job = await self.queue.claim_next()
        self.assertEqual(job.attempts_made, 3)

        outcome = await self.queue.fail(job.id, job.lease_token, "boom", "trace-3")
        self.assertTrue(outcome.final)
        self.assertEqual(outcome.attempts_made, 3)

        stored = await self.queue.get_job("j")
        self.assertEqual(stored.state, JOB_STATE_FAILED)
        self.assertEqual(stored.failed_reason, "boom")
        self.assertEqual(stored.stacktrace, ["trace-1", "trace-2", "trace-3"])
        self.assertLessEqual(stored.attempts_made, stored.max_attempts)

        self.clock.advance_ms(60_000)
        self.assertIsNone(await self.queue.claim_next())

    async def test_fail_without_retry_finalizes_immediately(self):
        await self.queue.enqueue("process-digitization", {}, JobOptions(job_id="j"))
        job = await self.queue.claim_next()

        outcome = await self.queue.fail(job.id, job.lease_token, "invalid payload", retry=False)

        self.assertTrue(outcome.final)
        self.assertEqual(outcome.attempts_made, 1)
        self.assertEqual(await self.queue.get_state("j"), JOB_STATE_FAILED)

    async def test_complete_stores_return_value(self):
        await self.queue.enqueue("process-digitization", {}, JobOptions(job_id="j"))
        job = await self.queue.claim_next()

        await self.queue.complete(job.id, job.lease_token, {"ok": True})

        stored = await self.queue.get_job("j")
        self.assertEqual(stored.state, JOB_STATE_COMPLETED)
        self.assertEqual(stored.return_value, {"ok": True})
        self.assertIsNone(stored.lease_token)

    async def test_stale_token_is_rejected(self):
        await self.queue.enqueue("process-digitization", {}, JobOptions(job_id="j"))
        job = await self.queue.claim_next()

        with self.assertRaises(LeaseLostError):
            await self.queue.complete(job.id, "not-the-token")
        with self.assertRaises(LeaseLostError):
            await self.queue.update_progress(job.id, "not-the-token", 50)

    async def test_progress_is_clamped(self):
        await self.queue.enqueue("process-digitization", {}, JobOptions(job_id="j"))
        job = await self.queue.claim_next()

        await self.queue.update_progress(job.id, job.lease_token, 250)
        self.assertEqual((await self.queue.get_job("j")).progress, 100)

    async def test_expired_lease_is_requeued(self):
        await self.queue.enqueue("process-digitization", {}, JobOptions(job_id="j"))
        first = await self.queue.claim_next()

        self.clock.advance_ms(30_001)
        second = await self.queue.claim_next()

        self.assertEqual(second.id, "j")
        self.assertEqual(second.attempts_made, 2)
        self.assertNotEqual(second.lease_token, first.lease_token)
        with self.assertRaises(LeaseLostError):
            await self.queue.complete(first.id, first.lease_token)

    async def test_extended_lease_is_not_requeued(self):
        await self.queue.enqueue("process-digitization", {}, JobOptions(job_id="j"))
        job = await self.queue.claim_next()

        self.clock.advance_ms(20_000)
        await self.queue.extend_lease(job.id, job.lease_token)
        self.clock.advance_ms(20_000)

        self.assertIsNone(await self.queue.claim_next())
        self.assertEqual(await self.queue.get_state("j"), JOB_STATE_ACTIVE)

    async def test_stalled_job_without_attempts_left_fails(self):
        queue = DurableQueue(self.redis, "single", max_attempts=1, lease_ms=1000, clock=self.clock)
        await queue.enqueue("process-digitization", {}, JobOptions(job_id="j"))
        await queue.claim_next()

        self.clock.advance_ms(1001)
        self.assertIsNone(await queue.claim_next())

        stored = await queue.get_job("j")
        self.assertEqual(stored.state, JOB_STATE_FAILED)
        self.assertEqual(stored.failed_reason, STALLED_REASON)

    async def test_remove_active_job_conflicts(self):
        await self.queue.enqueue("process-digitization", {}, JobOptions(job_id="j"))
        await self.queue.claim_next()

        with self.assertRaises(ConflictError):
            await self.queue.remove("j")
        self.assertEqual(await self.queue.get_state("j"), JOB_STATE_ACTIVE)

    async def test_remove_waiting_job(self):
        await self.queue.enqueue("process-digitization", {}, JobOptions(job_id="j"))

        await self.queue.remove("j")

        self.assertIsNone(await self.queue.get_job("j"))
        self.assertIsNone(await self.queue.claim_next())

    async def test_remove_unknown_job_raises_not_found(self):
        with self.assertRaises(NotFoundError):
            await self.queue.remove("missing")

    async def test_completed_retention_by_count(self):
        queue = DurableQueue(
            self.redis,
            "retained",
            remove_on_complete=RetentionPolicy(max_count=1),
            clock=self.clock,
        )
        for job_id in ("a", "b"):
            await queue.enqueue("process-digitization", {}, JobOptions(job_id=job_id))
            job = await queue.claim_next()
            self.clock.advance_ms(10)
            await queue.complete(job.id, job.lease_token)

        self.assertIsNone(await queue.get_job("a"))
        self.assertIsNotNone(await queue.get_job("b"))

    async def test_failed_retention_by_age(self):
        queue = DurableQueue(
            self.redis,
            "aged",
            max_attempts=1,
            remove_on_fail=RetentionPolicy(max_age_ms=1000),
            clock=self.clock,
        )
        await queue.enqueue("process-digitization", {}, JobOptions(job_id="old"))
        job = await queue.claim_next()
        await queue.fail(job.id, job.lease_token, "boom")

        self.clock.advance_ms(5000)
        await queue.enqueue("process-digitization", {}, JobOptions(job_id="new"))
        job = await queue.claim_next()
        await queue.fail(job.id, job.lease_token, "boom")

        self.assertIsNone(await queue.get_job("old"))
        self.assertIsNotNone(await queue.get_job("new"))

    async def test_get_jobs_orders_by_state(self):
        for job_id in ("a", "b", "c"):
            await self.queue.enqueue("process-digitization", {}, JobOptions(job_id=job_id))

        waiting = await self.queue.get_jobs(JOB_STATE_WAITING)
        self.assertEqual([job.id for job in waiting], ["a", "b", "c"])

        self.assertEqual([job.id for job in await self.queue.get_jobs(JOB_STATE_WAITING, offset=1, limit=1)], ["b"])

    async def test_counts(self):
        await self.queue.enqueue("process-digitization", {}, JobOptions(job_id="a"))
        await self.queue.enqueue("process-digitization", {}, JobOptions(job_id="b"))
        await self.queue.claim_next()

        counts = await self.queue.counts()
        self.assertEqual(counts[JOB_STATE_WAITING], 1)
        self.assertEqual(counts[JOB_STATE_ACTIVE], 1)
        self.assertEqual(counts[JOB_STATE_FAILED], 0)


if __name__ == "__main__":
    unittest.main()
