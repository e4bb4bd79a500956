# User value: This file turns raw failures into stable codes and readable messages shown on work records.
from __future__ import annotations

import asyncio

import redis

from digitizer.errors import (
    ConflictError,
    DigitizerError,
    ErrorKind,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)

_SERVICE_CODES = {
    "vision": "EXTERNAL_OCR",
    "translation": "EXTERNAL_TRANSLATION",
    "storage": "EXTERNAL_STORAGE",
    "download": "EXTERNAL_DOWNLOAD",
}


def _service_code(exc: ExternalServiceError) -> str:
    name = (exc.service_name or "").lower()
    for marker, code in _SERVICE_CODES.items():
        if marker in name:
            return code
    return "EXTERNAL_SERVICE"


def classify_error(exc: BaseException) -> tuple[ErrorKind, str, str]:
    """Return (kind, error_code, user message) for any exception."""
    text = f"{exc}".strip()
    low = text.lower()

    if isinstance(exc, ValidationError):
        return (ErrorKind.VALIDATION, "VALIDATION_FAILED", exc.message)
    if isinstance(exc, NotFoundError):
        return (ErrorKind.NOT_FOUND, "NOT_FOUND", exc.message)
    if isinstance(exc, ConflictError):
        return (ErrorKind.CONFLICT, "CONFLICT", exc.message)
    if isinstance(exc, ExternalServiceError):
        if "resource exhausted" in low or "429" in low or "quota" in low:
            return (ErrorKind.EXTERNAL_SERVICE, "RATE_LIMIT_EXCEEDED", exc.message)
        return (ErrorKind.EXTERNAL_SERVICE, _service_code(exc), exc.message)
    if isinstance(exc, DigitizerError):
        return (exc.kind, exc.kind.value, exc.message)

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)) and not isinstance(exc, redis.exceptions.TimeoutError):
        return (ErrorKind.EXTERNAL_SERVICE, "PROVIDER_TIMEOUT", "A remote call timed out. Please retry.")
    if isinstance(exc, (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError)):
        return (ErrorKind.INFRA_CONNECT, "INFRA_REDIS", "Queue/storage connection issue while processing.")
    if "resource exhausted" in low or "429" in low or "quota" in low:
        return (ErrorKind.EXTERNAL_SERVICE, "RATE_LIMIT_EXCEEDED", "Service is busy right now. Please retry shortly.")
    return (ErrorKind.EXTERNAL_SERVICE, "PROCESSING_FAILED", text or "Processing failed due to an internal error.")
