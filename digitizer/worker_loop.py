import asyncio
import logging
import os
import signal
import sys
import time
import traceback
from typing import Optional

import redis
import redis.asyncio as aioredis
from dotenv import load_dotenv
from google.cloud import translate_v3, vision

from digitizer.adapters.recognition import VisionTextRecognizer
from digitizer.adapters.record_store import WorkRecordStore
from digitizer.adapters.translation import CloudTranslator
from digitizer.contract import (
    COMPLETED_RETENTION_COUNT,
    COMPLETED_RETENTION_MS,
    DEAD_LETTER_RETENTION_MS,
    FAILED_RETENTION_MS,
    JOB_STATE_FAILED,
    RECORD_STATUS_FAILED,
)
from digitizer.dead_letter import DeadLetterRouter, build_dead_letter_entry
from digitizer.errors import InfraConnectError, LeaseLostError
from digitizer.job_queue import DurableQueue, RetentionPolicy
from digitizer.json_logging import configure_json_logging, level_from_name
from digitizer.metrics import observe_ms, subscribe_metrics
from digitizer.models import Job
from digitizer.notifications import Notification, NotificationBus, Subscription, WorkerEvent
from digitizer.pipeline import DigitizationPipeline
from digitizer.producer import DigitizationProducer
from digitizer.recovery_policy import decide_for_exception
from digitizer.startup_env import Settings, load_settings, validate_startup_env
from digitizer.status_machine import is_terminal
from digitizer.utils.gcs import GcsImageStorage, load_credentials
from digitizer.utils.redis_safe import connect_redis, log_redis_health

logger = logging.getLogger("digitizer.worker")

_REDIS_TRANSIENT = (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError)


# =========================================================
# NOTIFICATION LOGGING
# =========================================================
def subscribe_stage_logging(bus: NotificationBus) -> Subscription:
    def _log(notification: Notification) -> None:
        payload = {
            "job_id": notification.job_id,
            "record_id": notification.record_id,
            "event": notification.event.value,
            "attempts_made": notification.attempts_made,
        }
        if notification.progress is not None:
            payload["progress"] = notification.progress
        if notification.event == WorkerEvent.FAILED:
            payload.update(error=notification.error, final=notification.final)
            logger.warning("worker_stage_event", extra=payload)
        else:
            logger.info("worker_stage_event", extra=payload)

    return bus.subscribe(_log)


# =========================================================
# WORKER
# =========================================================
class Worker:
    """
    Pulls digitization jobs off the queue and runs them through the pipeline.

    At most `concurrency` jobs run at once. While a job runs its lease is
    renewed in the background; a failed attempt goes back to the queue with
    backoff, and the final failure of a job lands in the dead letter queue.
    """

    def __init__(
        self,
        queue: DurableQueue,
        pipeline: DigitizationPipeline,
        dead_letters: DeadLetterRouter,
        bus: Optional[NotificationBus] = None,
        *,
        concurrency: int = 1,
        claim_timeout: float = 5.0,
        reconcile_interval: float = 60.0,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.pipeline = pipeline
        self.dead_letters = dead_letters
        self.bus = bus or NotificationBus()
        self.concurrency = concurrency
        self.claim_timeout = claim_timeout
        self.reconcile_interval = reconcile_interval

    def _emit(self, event: WorkerEvent, job: Job, **fields) -> None:
        self.bus.emit(
            Notification(
                event=event,
                job_id=job.id,
                record_id=str(job.payload.get("workRecordId") or ""),
                attempts_made=job.attempts_made,
                **fields,
            )
        )

    async def _keep_lease(self, job: Job) -> None:
        interval = max(0.05, self.queue.lease_ms / 2000.0)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.queue.extend_lease(job.id, job.lease_token)
            except LeaseLostError:
                logger.warning("worker_lease_lost job_id=%s", job.id)
                return
            except _REDIS_TRANSIENT as exc:
                logger.warning("worker_lease_extend_failed job_id=%s error=%s", job.id, exc)

    async def process_next(self, timeout: Optional[float] = None) -> Optional[str]:
        """Claim one job and run it to the end of the attempt; returns its id."""
        job = await self.queue.claim_next(timeout=self.claim_timeout if timeout is None else timeout)
        if job is None:
            return None
        await self.handle(job)
        return job.id

    async def handle(self, job: Job) -> None:
        self._emit(WorkerEvent.ACTIVE, job)
        heartbeat = asyncio.create_task(self._keep_lease(job))

        async def report_progress(progress: int) -> None:
            await self.queue.update_progress(job.id, job.lease_token, progress)
            self._emit(WorkerEvent.PROGRESS, job, progress=progress)

        async def check_lease() -> None:
            await self.queue.extend_lease(job.id, job.lease_token)

        t0 = time.perf_counter()
        try:
            try:
                result = await self.pipeline.process_job(job, report_progress, check_lease)
            except LeaseLostError:
                raise
            except Exception as exc:
                await self._handle_failure(job, exc)
            else:
                await self.queue.complete(job.id, job.lease_token, result)
                self._emit(WorkerEvent.COMPLETED, job, result=result)
        except LeaseLostError:
            # Another worker owns the job now; its outcome is theirs to record.
            logger.warning("worker_job_abandoned_lease_lost job_id=%s", job.id)
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
            observe_ms("worker_job_latency_ms", (time.perf_counter() - t0) * 1000.0, queue=self.queue.name)

    async def _handle_failure(self, job: Job, exc: BaseException) -> None:
        decision, error_code = decide_for_exception(
            exc,
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
        )
        reason = str(exc) or exc.__class__.__name__
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))

        outcome = await self.queue.fail(
            job.id,
            job.lease_token,
            reason,
            stack,
            retry=decision.retry_allowed,
        )
        if outcome.final:
            await self._fail_record(job, reason, error_code)
            entry = build_dead_letter_entry(
                job=job,
                failed_reason=reason,
                stacktrace=[*job.stacktrace, stack],
                error_code=error_code,
            )
            await self.dead_letters.route(entry)

        self._emit(WorkerEvent.FAILED, job, error=reason, final=outcome.final)

    async def _fail_record(self, job: Job, reason: str, error_code: str) -> None:
        """Fail the record along with its job when the pipeline could not record it."""
        record_id = str(job.payload.get("workRecordId") or "")
        if not record_id:
            return
        records = self.pipeline.records
        try:
            record = await records.get(record_id)
            if record is None or is_terminal(record.status):
                return
            await records.transition(
                record_id,
                RECORD_STATUS_FAILED,
                context="WORKER_FINAL_FAILURE",
                failure_reason=reason,
                error_code=error_code,
                attempts_made=job.attempts_made,
            )
        except Exception:
            # reconcile() retries this later
            logger.exception("Failure during error handling job_id=%s record_id=%s", job.id, record_id)

    async def _run_one(self, job: Job, slots: asyncio.Semaphore) -> None:
        try:
            await self.handle(job)
        except Exception:
            logger.exception("Worker error job_id=%s", job.id)
        finally:
            slots.release()

    async def run(self, stop_event: asyncio.Event) -> None:
        slots = asyncio.Semaphore(self.concurrency)
        running: set = set()
        last_reconcile = time.monotonic()

        logger.info("worker_started queue=%s concurrency=%s", self.queue.name, self.concurrency)
        while not stop_event.is_set():
            await slots.acquire()
            if stop_event.is_set():
                slots.release()
                break

            try:
                if time.monotonic() - last_reconcile >= self.reconcile_interval:
                    last_reconcile = time.monotonic()
                    await self.reconcile()
                job = await self.queue.claim_next(timeout=self.claim_timeout)
            except _REDIS_TRANSIENT as exc:
                slots.release()
                logger.warning("worker_redis_unavailable queue=%s error=%s", self.queue.name, exc)
                await log_redis_health(self.queue.redis, prefix="[claim-error] ")
                await asyncio.sleep(2)
                continue

            if job is None:
                slots.release()
                continue

            task = asyncio.create_task(self._run_one(job, slots))
            running.add(task)
            task.add_done_callback(running.discard)

        if running:
            logger.info("worker_draining in_flight=%s", len(running))
            await asyncio.gather(*running, return_exceptions=True)
        logger.info("worker_stopped queue=%s", self.queue.name)

    async def reconcile(self, batch_size: int = 100) -> int:
        """
        Close the gap between failed jobs and their records.

        For every failed job: the record is moved to `failed` if it is not
        terminal yet, and a dead letter entry is pushed if none was routed.
        Both steps are idempotent. Returns the number of jobs repaired.
        """
        records = self.pipeline.records
        repaired = 0
        offset = 0
        while True:
            jobs = await self.queue.get_jobs(JOB_STATE_FAILED, offset=offset, limit=batch_size)
            if not jobs:
                break
            offset += len(jobs)

            for job in jobs:
                touched = False
                reason = job.failed_reason or "Processing failed"
                record_id = str(job.payload.get("workRecordId") or "")
                record = await records.get(record_id) if record_id else None
                if record is not None and not is_terminal(record.status):
                    touched = await records.transition(
                        record_id,
                        RECORD_STATUS_FAILED,
                        context="RECONCILE",
                        failure_reason=reason,
                        attempts_made=job.attempts_made,
                    )

                if not await self.dead_letters.exists(job.id):
                    error_code = (record.error_code if record is not None else None) or "PROCESSING_FAILED"
                    entry = build_dead_letter_entry(
                        job=job,
                        failed_reason=reason,
                        stacktrace=job.stacktrace,
                        error_code=error_code,
                    )
                    await self.dead_letters.route(entry)
                    touched = True

                if touched:
                    repaired += 1
                    logger.warning("worker_reconciled job_id=%s record_id=%s", job.id, record_id)

            if len(jobs) < batch_size:
                break

        if repaired:
            logger.info("worker_reconcile_done queue=%s repaired=%s", self.queue.name, repaired)
        return repaired


# =========================================================
# WIRING
# =========================================================
def build_queues(settings: Settings, redis_client: aioredis.Redis) -> tuple[DurableQueue, DurableQueue]:
    queue = DurableQueue(
        redis_client,
        settings.queue_name,
        max_attempts=settings.queue_max_attempts,
        backoff_delay_ms=settings.queue_backoff_ms,
        lease_ms=settings.queue_lease_ms,
        poll_interval=settings.queue_poll_interval_sec,
        remove_on_complete=RetentionPolicy(max_age_ms=COMPLETED_RETENTION_MS, max_count=COMPLETED_RETENTION_COUNT),
        remove_on_fail=RetentionPolicy(max_age_ms=FAILED_RETENTION_MS),
    )
    dlq = DurableQueue(
        redis_client,
        settings.dlq_name,
        max_attempts=1,
        lease_ms=settings.queue_lease_ms,
        poll_interval=settings.queue_poll_interval_sec,
        remove_on_complete=RetentionPolicy(max_age_ms=DEAD_LETTER_RETENTION_MS),
        remove_on_fail=RetentionPolicy(max_age_ms=DEAD_LETTER_RETENTION_MS),
    )
    return queue, dlq


def build_worker(settings: Settings, redis_client: aioredis.Redis, bus: Optional[NotificationBus] = None) -> Worker:
    credentials = load_credentials(settings.credentials_json_b64)
    recognizer = VisionTextRecognizer(
        client=vision.ImageAnnotatorAsyncClient(credentials=credentials),
        timeout_sec=settings.provider_timeout_sec,
    )
    translator = CloudTranslator(
        settings.gcp_project_id,
        settings.gcp_location,
        client=translate_v3.TranslationServiceAsyncClient(credentials=credentials),
        timeout_sec=settings.provider_timeout_sec,
    )
    queue, dlq = build_queues(settings, redis_client)
    pipeline = DigitizationPipeline(
        WorkRecordStore(redis_client),
        recognizer,
        translator,
        default_language_hints=settings.ocr_language_hints,
    )
    return Worker(
        queue,
        pipeline,
        DeadLetterRouter(dlq),
        bus,
        concurrency=settings.worker_concurrency,
    )


def build_producer(settings: Settings, redis_client: aioredis.Redis) -> DigitizationProducer:
    """Ingestion side: uploads land under `GCS_FOLDER_PREFIX`, bounded by `UPLOAD_TIMEOUT_SEC`."""
    queue, _ = build_queues(settings, redis_client)
    storage = GcsImageStorage(
        settings.gcs_bucket_name,
        credentials_b64=settings.credentials_json_b64,
        folder_prefix=settings.gcs_folder_prefix,
        timeout_sec=settings.upload_timeout_sec,
    )
    return DigitizationProducer(
        queue,
        WorkRecordStore(redis_client),
        storage,
        download_timeout_sec=settings.upload_timeout_sec,
    )


async def serve(settings: Settings) -> None:
    logger.info("Starting worker")
    logger.info("QUEUE=%s DLQ=%s CONCURRENCY=%s", settings.queue_name, settings.dlq_name, settings.worker_concurrency)

    redis_client = await connect_redis(settings.redis_url)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    bus = NotificationBus()
    subscriptions = [subscribe_stage_logging(bus), subscribe_metrics(bus, settings.queue_name)]
    try:
        worker = build_worker(settings, redis_client, bus)
        await worker.reconcile()
        await worker.run(stop_event)
    finally:
        for subscription in subscriptions:
            subscription.cancel()
        await redis_client.aclose()


def main() -> int:
    # Load .env for local runs
    load_dotenv(os.path.join(os.path.dirname(os.path.dirname(__file__)), ".env"))
    configure_json_logging(service="digitizer-worker", level=level_from_name(os.getenv("LOG_LEVEL", "INFO")))

    try:
        validate_startup_env()
    except RuntimeError:
        return 1
    settings = load_settings()

    try:
        asyncio.run(serve(settings))
    except InfraConnectError as exc:
        logger.error("startup_infra_unreachable error=%s", exc.message)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
