# User value: This file turns an image (URL or upload) into a queued digitization the user can poll.
import logging
import uuid
from typing import Awaitable, Callable, Optional, Sequence

from digitizer.adapters.ports import BlobUploader
from digitizer.adapters.record_store import WorkRecordStore
from digitizer.contract import JOB_TYPE_DIGITIZATION, RECORD_STATUS_FAILED
from digitizer.dispatcher import validate_language_hints, validate_payload, validate_target_language
from digitizer.errors import ValidationError
from digitizer.job_queue import DurableQueue
from digitizer.models import DigitizationPayload, JobOptions, WorkRecord
from digitizer.utils.download import download_file_as_bytes
from digitizer.utils.images import MAX_IMAGE_BYTES, validate_image

logger = logging.getLogger("digitizer.producer")

URL_UPLOAD_FOLDER = "url-uploads"
DIRECT_UPLOAD_FOLDER = "direct-uploads"

Downloader = Callable[..., Awaitable[bytes]]


def _check_options(target_language: Optional[str], source_language_hints: Optional[Sequence[str]]) -> None:
    if target_language:
        validate_target_language(target_language)
    validate_language_hints(source_language_hints)


class DigitizationProducer:
    def __init__(
        self,
        queue: DurableQueue,
        record_store: WorkRecordStore,
        uploader: Optional[BlobUploader] = None,
        *,
        downloader: Downloader = download_file_as_bytes,
        download_timeout_sec: float = 30.0,
        max_image_bytes: int = MAX_IMAGE_BYTES,
    ):
        self.queue = queue
        self.records = record_store
        self.uploader = uploader
        self.downloader = downloader
        self.download_timeout_sec = download_timeout_sec
        self.max_image_bytes = max_image_bytes

    async def submit(
        self,
        image_url: str,
        target_language: Optional[str] = None,
        source_language_hints: Optional[Sequence[str]] = None,
    ) -> str:
        """
        Create a pending record for `image_url` and enqueue its job.

        The job id is the record id, so submitting can never produce two
        jobs for one record. Invalid input raises ValidationError before
        anything is written.
        """
        record_id = uuid.uuid4().hex
        candidate = DigitizationPayload(
            image_url=image_url,
            work_record_id=record_id,
            source_language_hints=list(source_language_hints or []),
            target_language=target_language,
        ).to_dict()
        payload = validate_payload(JOB_TYPE_DIGITIZATION, candidate)

        await self.records.create(
            WorkRecord(
                id=record_id,
                image_url=payload.image_url,
                source_language_hints=payload.source_language_hints,
                target_language=payload.target_language,
            )
        )

        try:
            await self.queue.enqueue(JOB_TYPE_DIGITIZATION, payload.to_dict(), JobOptions(job_id=record_id))
        except Exception as exc:
            logger.exception("producer_enqueue_failed record_id=%s", record_id)
            try:
                await self.records.transition(
                    record_id,
                    RECORD_STATUS_FAILED,
                    context="ENQUEUE_FAILED",
                    failure_reason=f"Could not queue the job: {exc}",
                    error_code="ENQUEUE_FAILED",
                )
            except Exception:
                logger.exception("Failure during error handling record_id=%s", record_id)
            raise

        logger.info(
            "producer_job_submitted record_id=%s translate=%s hints=%s",
            record_id,
            bool(payload.target_language),
            payload.source_language_hints,
        )
        return record_id

    def _require_uploader(self) -> BlobUploader:
        if self.uploader is None:
            raise RuntimeError("no blob uploader configured")
        return self.uploader

    async def digitize_by_url(
        self,
        url: str,
        target_language: Optional[str] = None,
        source_language_hints: Optional[Sequence[str]] = None,
    ) -> str:
        """Copy a remote image into blob storage, then submit the stored copy."""
        uploader = self._require_uploader()
        # Reject bad input before any network call.
        _check_options(target_language, source_language_hints)
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            raise ValidationError("A valid image URL is required")

        image_bytes = await self.downloader(url, timeout_sec=self.download_timeout_sec, max_bytes=self.max_image_bytes)
        stored_url = await uploader.upload_image(image_bytes, URL_UPLOAD_FOLDER)
        return await self.submit(stored_url, target_language, source_language_hints)

    async def digitize_upload(
        self,
        image_bytes: bytes,
        target_language: Optional[str] = None,
        source_language_hints: Optional[Sequence[str]] = None,
    ) -> str:
        uploader = self._require_uploader()
        if not image_bytes:
            raise ValidationError("No image file uploaded.")
        _check_options(target_language, source_language_hints)
        validate_image(image_bytes, self.max_image_bytes)

        stored_url = await uploader.upload_image(image_bytes, DIRECT_UPLOAD_FOLDER)
        return await self.submit(stored_url, target_language, source_language_hints)
