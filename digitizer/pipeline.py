# -*- coding: utf-8 -*-
"""
Digitization state machine: OCR -> optional translation -> persist.

Drives one work record from `processing` to `completed`, or records the
failure of the attempt and re-raises so the queue can apply its retry policy.
"""

import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

from digitizer.adapters.ports import TextRecognizer, Translator
from digitizer.adapters.record_store import WorkRecordStore
from digitizer.contract import (
    PROGRESS_DONE,
    PROGRESS_PERSISTING,
    PROGRESS_PROCESSING,
    PROGRESS_RECOGNIZED,
    PROGRESS_TRANSLATED,
    RECORD_STATUS_COMPLETED,
    RECORD_STATUS_FAILED,
    RECORD_STATUS_PROCESSING,
)
from digitizer.dispatcher import validate_payload
from digitizer.errors import LeaseLostError
from digitizer.models import Job
from digitizer.recovery_policy import decide_for_exception
from digitizer.status_machine import is_terminal

logger = logging.getLogger("digitizer.pipeline")

ProgressReporter = Callable[[int], Awaitable[None]]
LeaseCheck = Callable[[], Awaitable[Any]]

DEFAULT_LANGUAGE_HINTS = ("en", "hi", "kn")


class DigitizationPipeline:
    def __init__(
        self,
        record_store: WorkRecordStore,
        recognizer: TextRecognizer,
        translator: Translator,
        *,
        default_language_hints: Sequence[str] = DEFAULT_LANGUAGE_HINTS,
    ):
        self.records = record_store
        self.recognizer = recognizer
        self.translator = translator
        self.default_language_hints = list(default_language_hints)

    async def process_job(
        self,
        job: Job,
        report_progress: ProgressReporter,
        check_lease: Optional[LeaseCheck] = None,
    ) -> Dict[str, Any]:
        """
        Run one attempt of `job`. `check_lease` must raise LeaseLostError once
        another worker owns the job; failure writes are skipped in that case.
        """
        payload = validate_payload(job.name, job.payload)
        record_id = payload.work_record_id

        record = await self.records.require(record_id)
        if is_terminal(record.status):
            # Re-delivery of a finished job: leave the record as it is.
            logger.warning(
                "pipeline_redelivery_skipped job_id=%s record_id=%s status=%s",
                job.id,
                record_id,
                record.status,
            )
            return {"workRecordId": record_id, "status": record.status, "skipped": True}

        await self.records.transition(
            record_id,
            RECORD_STATUS_PROCESSING,
            context="PIPELINE_START",
            attempts_made=job.attempts_made,
        )
        await report_progress(PROGRESS_PROCESSING)

        t0 = time.perf_counter()
        try:
            hints = payload.source_language_hints or record.source_language_hints or self.default_language_hints
            recognized_text = await self.recognizer.recognize(payload.image_url, hints)
            await report_progress(PROGRESS_RECOGNIZED)

            if payload.target_language:
                translation = await self.translator.translate(recognized_text, payload.target_language)
                await report_progress(PROGRESS_TRANSLATED)
                fields = {
                    "recognized_text": recognized_text,
                    "translated_text": translation.translated_text,
                    "detected_language": translation.detected_language_code,
                    "translation_skipped": False,
                }
            else:
                logger.info("pipeline_translation_skipped job_id=%s record_id=%s", job.id, record_id)
                fields = {
                    "recognized_text": recognized_text,
                    "translated_text": None,
                    "translation_skipped": True,
                }

            await report_progress(PROGRESS_PERSISTING)
            persisted = await self.records.transition(
                record_id,
                RECORD_STATUS_COMPLETED,
                context="PIPELINE_COMPLETE",
                failure_reason=None,
                error_code=None,
                **fields,
            )
            await report_progress(PROGRESS_DONE)
        except LeaseLostError:
            raise
        except Exception as exc:
            await self._record_failure(job, record_id, exc, check_lease)
            raise

        duration = round(time.perf_counter() - t0, 2)
        logger.info(
            "pipeline_completed job_id=%s record_id=%s translated=%s duration_sec=%s",
            job.id,
            record_id,
            not fields["translation_skipped"],
            duration,
        )
        return {
            "workRecordId": record_id,
            "status": RECORD_STATUS_COMPLETED,
            "translationSkipped": fields["translation_skipped"],
            "detectedLanguage": fields.get("detected_language"),
            "skipped": not persisted,
        }

    async def _record_failure(
        self,
        job: Job,
        record_id: str,
        exc: BaseException,
        check_lease: Optional[LeaseCheck] = None,
    ) -> None:
        decision, error_code = decide_for_exception(
            exc,
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
        )
        reason = str(exc) or exc.__class__.__name__
        try:
            if check_lease is not None:
                await check_lease()
            if decision.is_final:
                await self.records.transition(
                    record_id,
                    RECORD_STATUS_FAILED,
                    context="PIPELINE_FAILED",
                    failure_reason=reason,
                    error_code=error_code,
                    attempts_made=job.attempts_made,
                )
            else:
                # Attempts remain: keep `processing` and expose the last error.
                await self.records.update_fields(
                    record_id,
                    context="PIPELINE_RETRY",
                    failure_reason=reason,
                    error_code=error_code,
                    attempts_made=job.attempts_made,
                )
        except LeaseLostError:
            logger.warning("pipeline_failure_not_recorded_lease_lost job_id=%s record_id=%s", job.id, record_id)
            return
        except Exception:
            logger.exception("Failure during error handling job_id=%s record_id=%s", job.id, record_id)

        logger.error(
            "pipeline_attempt_failed job_id=%s record_id=%s attempt=%s/%s action=%s error_code=%s error=%s",
            job.id,
            record_id,
            job.attempts_made,
            job.max_attempts,
            decision.action,
            error_code,
            reason,
        )
