# -*- coding: utf-8 -*-
"""
Job payload validation for the digitizer.

Responsible for:
- validating job payloads (on submit and again when a job is claimed)
- turning the wire payload into a DigitizationPayload

NO execution logic lives here.
"""

import logging
import re
from typing import Any, Dict, List
from urllib.parse import urlparse

from digitizer.contract import JOB_TYPE_DIGITIZATION
from digitizer.errors import ValidationError
from digitizer.models import DigitizationPayload

logger = logging.getLogger("digitizer.dispatcher")

_LANGUAGE_CODE = re.compile(r"^[A-Za-z]{2,3}([-_][A-Za-z0-9]{2,8})*$")


def _is_url(value: Any) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https", "gs") and bool(parsed.netloc)


def validate_language_hints(hints: Any) -> List[str]:
    if hints is None:
        return []
    if isinstance(hints, str):
        hints = [h.strip() for h in hints.split(",")]
    if not isinstance(hints, (list, tuple)):
        raise ValidationError("'sourceLanguageHints' must be a list of strings")
    cleaned = []
    for hint in hints:
        if not isinstance(hint, str):
            raise ValidationError("'sourceLanguageHints' must be a list of strings")
        if hint.strip():
            cleaned.append(hint.strip())
    return cleaned


def validate_target_language(value: Any) -> str:
    if not isinstance(value, str) or len(value.strip()) < 2:
        raise ValidationError("Target language must be at least 2 characters")
    value = value.strip()
    if not _LANGUAGE_CODE.match(value):
        raise ValidationError(f"Target language '{value}' is not a language code")
    return value


def validate_payload(job_type: str, payload: Dict[str, Any]) -> DigitizationPayload:
    """
    Validate a job payload.

    Expected schema:

    {
        "imageUrl": "https://...",
        "sourceLanguageHints": ["en", "hi"],
        "targetLanguage": "fr",          # optional
        "workRecordId": "..."
    }
    """
    if job_type != JOB_TYPE_DIGITIZATION:
        raise ValidationError(f"Unsupported job type: {job_type}")
    if not isinstance(payload, dict):
        raise ValidationError("Job payload must be a dictionary")

    for field in ("imageUrl", "workRecordId"):
        if field not in payload:
            raise ValidationError(f"Missing required field: {field}")

    if not _is_url(payload["imageUrl"]):
        raise ValidationError("A valid image URL is required")
    if not isinstance(payload["workRecordId"], str) or not payload["workRecordId"].strip():
        raise ValidationError("'workRecordId' must be a non-empty string")

    target = payload.get("targetLanguage")
    return DigitizationPayload(
        image_url=payload["imageUrl"],
        work_record_id=payload["workRecordId"].strip(),
        source_language_hints=validate_language_hints(payload.get("sourceLanguageHints")),
        target_language=validate_target_language(target) if target else None,
    )
