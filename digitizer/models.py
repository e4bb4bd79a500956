import json
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from digitizer.contract import JOB_STATE_WAITING, RECORD_STATUS_PENDING


def now_ms() -> int:
    return int(time.time() * 1000)


def iso_from_ms(value_ms: Optional[int]) -> Optional[str]:
    if value_ms is None:
        return None
    return datetime.fromtimestamp(value_ms / 1000.0, tz=timezone.utc).isoformat()


@dataclass
class DigitizationPayload:
    """
    Job payload for one digitization request.

    Serialized with the camelCase keys used on the wire by producers.
    """

    image_url: str
    work_record_id: str
    source_language_hints: List[str] = field(default_factory=list)
    target_language: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "imageUrl": self.image_url,
            "sourceLanguageHints": list(self.source_language_hints),
            "workRecordId": self.work_record_id,
        }
        if self.target_language:
            data["targetLanguage"] = self.target_language
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DigitizationPayload":
        return cls(
            image_url=data["imageUrl"],
            work_record_id=data["workRecordId"],
            source_language_hints=list(data.get("sourceLanguageHints") or []),
            target_language=data.get("targetLanguage") or None,
        )


@dataclass
class JobOptions:
    job_id: Optional[str] = None
    delay_ms: int = 0


@dataclass
class Job:
    """
    A queued unit of work as stored in the job hash.

    The payload is opaque to the queue.
    """

    id: str
    queue_name: str
    name: str
    payload: Dict[str, Any]
    state: str = JOB_STATE_WAITING
    attempts_made: int = 0
    max_attempts: int = 1
    backoff_delay_ms: int = 0
    progress: int = 0
    created_at: int = field(default_factory=now_ms)
    processed_on: Optional[int] = None
    finished_on: Optional[int] = None
    failed_reason: Optional[str] = None
    stacktrace: List[str] = field(default_factory=list)
    return_value: Optional[Dict[str, Any]] = None
    lease_token: Optional[str] = None
    lease_expires_at: Optional[int] = None

    def to_redis(self) -> Dict[str, str]:
        """Flatten to a Redis hash mapping; None fields are left out."""
        mapping = {
            "id": self.id,
            "queue_name": self.queue_name,
            "name": self.name,
            "payload": json.dumps(self.payload, ensure_ascii=False),
            "state": self.state,
            "attempts_made": str(self.attempts_made),
            "max_attempts": str(self.max_attempts),
            "backoff_delay_ms": str(self.backoff_delay_ms),
            "progress": str(self.progress),
            "created_at": str(self.created_at),
            "stacktrace": json.dumps(self.stacktrace, ensure_ascii=False),
        }
        optional = {
            "processed_on": self.processed_on,
            "finished_on": self.finished_on,
            "failed_reason": self.failed_reason,
            "lease_token": self.lease_token,
            "lease_expires_at": self.lease_expires_at,
        }
        for key, value in optional.items():
            if value is not None:
                mapping[key] = str(value)
        if self.return_value is not None:
            mapping["return_value"] = json.dumps(self.return_value, ensure_ascii=False)
        return mapping

    @classmethod
    def from_redis(cls, raw: Dict[str, str]) -> "Job":
        def _opt_int(key: str) -> Optional[int]:
            value = raw.get(key)
            if value in (None, ""):
                return None
            return int(value)

        return_value = raw.get("return_value")
        return cls(
            id=raw["id"],
            queue_name=raw["queue_name"],
            name=raw["name"],
            payload=json.loads(raw.get("payload") or "{}"),
            state=raw.get("state") or JOB_STATE_WAITING,
            attempts_made=int(raw.get("attempts_made") or 0),
            max_attempts=int(raw.get("max_attempts") or 1),
            backoff_delay_ms=int(raw.get("backoff_delay_ms") or 0),
            progress=int(raw.get("progress") or 0),
            created_at=int(raw.get("created_at") or 0),
            processed_on=_opt_int("processed_on"),
            finished_on=_opt_int("finished_on"),
            failed_reason=raw.get("failed_reason") or None,
            stacktrace=json.loads(raw.get("stacktrace") or "[]"),
            return_value=json.loads(return_value) if return_value else None,
            lease_token=raw.get("lease_token") or None,
            lease_expires_at=_opt_int("lease_expires_at"),
        )


@dataclass
class WorkRecord:
    id: str
    image_url: str
    status: str = RECORD_STATUS_PENDING
    source_language_hints: List[str] = field(default_factory=list)
    target_language: Optional[str] = None
    detected_language: Optional[str] = None
    recognized_text: Optional[str] = None
    translated_text: Optional[str] = None
    translation_skipped: bool = False
    failure_reason: Optional[str] = None
    error_code: Optional[str] = None
    attempts_made: int = 0
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def to_redis(self) -> Dict[str, str]:
        mapping = {
            "id": self.id,
            "image_url": self.image_url,
            "status": self.status,
            "source_language_hints": json.dumps(self.source_language_hints, ensure_ascii=False),
            "translation_skipped": "1" if self.translation_skipped else "0",
            "attempts_made": str(self.attempts_made),
            "created_at": str(self.created_at),
            "updated_at": str(self.updated_at),
        }
        for key in ("target_language", "detected_language", "recognized_text", "translated_text", "failure_reason", "error_code"):
            value = getattr(self, key)
            if value is not None:
                mapping[key] = value
        return mapping

    @classmethod
    def from_redis(cls, raw: Dict[str, str]) -> "WorkRecord":
        return cls(
            id=raw["id"],
            image_url=raw["image_url"],
            status=raw.get("status") or RECORD_STATUS_PENDING,
            source_language_hints=json.loads(raw.get("source_language_hints") or "[]"),
            target_language=raw.get("target_language") or None,
            detected_language=raw.get("detected_language") or None,
            recognized_text=raw.get("recognized_text"),
            translated_text=raw.get("translated_text"),
            translation_skipped=raw.get("translation_skipped") == "1",
            failure_reason=raw.get("failure_reason") or None,
            error_code=raw.get("error_code") or None,
            attempts_made=int(raw.get("attempts_made") or 0),
            created_at=int(raw.get("created_at") or 0),
            updated_at=int(raw.get("updated_at") or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = iso_from_ms(self.created_at)
        data["updated_at"] = iso_from_ms(self.updated_at)
        return data


@dataclass
class DeadLetterEntry:
    original_job_id: str
    payload: Dict[str, Any]
    failed_reason: str
    stacktrace: List[str]
    attempts_made: int
    failed_at: str
    queue_name: str = ""
    error_code: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "originalJob": {
                "id": self.original_job_id,
                "data": self.payload,
                "failedReason": self.failed_reason,
                "stacktrace": list(self.stacktrace),
                "attemptsMade": self.attempts_made,
            },
            "failedAt": self.failed_at,
            "queueName": self.queue_name,
            "errorCode": self.error_code,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeadLetterEntry":
        original = data.get("originalJob") or {}
        return cls(
            original_job_id=str(original.get("id") or ""),
            payload=original.get("data") or {},
            failed_reason=str(original.get("failedReason") or ""),
            stacktrace=list(original.get("stacktrace") or []),
            attempts_made=int(original.get("attemptsMade") or 0),
            failed_at=str(data.get("failedAt") or ""),
            queue_name=str(data.get("queueName") or ""),
            error_code=str(data.get("errorCode") or ""),
        )
