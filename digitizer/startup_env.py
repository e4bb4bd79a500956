# User value: This file stops the worker early with every config problem listed, instead of failing mid-job.
import logging
import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Tuple

from digitizer.contract import DEFAULT_DLQ_NAME, DEFAULT_QUEUE_NAME

logger = logging.getLogger("digitizer.startup")


@dataclass(frozen=True)
class Settings:
    redis_url: str
    gcp_project_id: str
    gcs_bucket_name: str
    queue_name: str = DEFAULT_QUEUE_NAME
    dlq_name: str = DEFAULT_DLQ_NAME
    worker_concurrency: int = 1
    queue_max_attempts: int = 3
    queue_backoff_ms: int = 2000
    queue_lease_ms: int = 30000
    queue_poll_interval_sec: float = 0.5
    gcp_location: str = "global"
    gcs_folder_prefix: str = "digitizer-app"
    upload_timeout_sec: float = 30.0
    provider_timeout_sec: float = 60.0
    ocr_language_hints: Tuple[str, ...] = field(default=("en", "hi", "kn"))
    credentials_json_b64: Optional[str] = None


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def _validate_redis_url(value: Optional[str], key: str, errors: List[str]) -> None:
    if _is_blank(value):
        errors.append(f"{key} is required")
        return
    if not (value.startswith("redis://") or value.startswith("rediss://")):
        errors.append(f"{key} must start with redis:// or rediss://")


def _require_keys(env: Mapping[str, str], keys: List[str], errors: List[str]) -> None:
    for key in keys:
        if _is_blank(env.get(key)):
            errors.append(f"{key} is required")


def _validate_int_range(
    env: Mapping[str, str],
    key: str,
    errors: List[str],
    *,
    min_value: Optional[int] = None,
    max_value: Optional[int] = None,
) -> None:
    raw = env.get(key)
    if _is_blank(raw):
        return

    try:
        value = int(str(raw).strip())
    except ValueError:
        errors.append(f"{key} must be an integer")
        return

    if min_value is not None and value < min_value:
        errors.append(f"{key} must be >= {min_value}")
    if max_value is not None and value > max_value:
        errors.append(f"{key} must be <= {max_value}")


def _validate_positive_float(env: Mapping[str, str], key: str, errors: List[str]) -> None:
    raw = env.get(key)
    if _is_blank(raw):
        return
    try:
        value = float(str(raw).strip())
    except ValueError:
        errors.append(f"{key} must be a number")
        return
    if value <= 0:
        errors.append(f"{key} must be > 0")


def validate_startup_env(env: Optional[Mapping[str, str]] = None) -> None:
    env = os.environ if env is None else env
    errors: List[str] = []
    warnings: List[str] = []

    _require_keys(env, ["GCP_PROJECT_ID", "GCS_BUCKET_NAME"], errors)
    _validate_redis_url(env.get("REDIS_URL"), "REDIS_URL", errors)

    _validate_int_range(env, "WORKER_CONCURRENCY", errors, min_value=1, max_value=64)
    _validate_int_range(env, "QUEUE_MAX_ATTEMPTS", errors, min_value=1, max_value=20)
    _validate_int_range(env, "QUEUE_BACKOFF_MS", errors, min_value=0, max_value=3_600_000)
    _validate_int_range(env, "QUEUE_LEASE_MS", errors, min_value=1000, max_value=3_600_000)
    for key in ("QUEUE_POLL_INTERVAL_SEC", "UPLOAD_TIMEOUT_SEC", "PROVIDER_TIMEOUT_SEC"):
        _validate_positive_float(env, key, errors)

    queue_name = (env.get("QUEUE_NAME") or DEFAULT_QUEUE_NAME).strip()
    dlq_name = (env.get("DLQ_NAME") or DEFAULT_DLQ_NAME).strip()
    if queue_name == dlq_name:
        errors.append("DLQ_NAME must differ from QUEUE_NAME")

    if _is_blank(env.get("GOOGLE_APPLICATION_CREDENTIALS_JSON")):
        warnings.append(
            "GOOGLE_APPLICATION_CREDENTIALS_JSON is not set; relying on ambient ADC credentials"
        )

    if errors:
        for err in errors:
            logger.error("startup_env_invalid %s", err)
        raise RuntimeError("Startup env validation failed: " + "; ".join(errors))

    for warning in warnings:
        logger.warning("startup_env_warning %s", warning)

    logger.info(
        "startup_env_validated queue=%s dlq=%s keys=%s",
        queue_name,
        dlq_name,
        ["REDIS_URL", "GCP_PROJECT_ID", "GCS_BUCKET_NAME"],
    )


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from the environment; call validate_startup_env first."""
    env = os.environ if env is None else env

    def _get(key: str, default: str) -> str:
        raw = env.get(key)
        return default if _is_blank(raw) else str(raw).strip()

    hints = tuple(h.strip() for h in _get("OCR_LANGUAGE_HINTS", "en,hi,kn").split(",") if h.strip())
    return Settings(
        redis_url=_get("REDIS_URL", "redis://localhost:6379/0"),
        gcp_project_id=_get("GCP_PROJECT_ID", ""),
        gcs_bucket_name=_get("GCS_BUCKET_NAME", ""),
        queue_name=_get("QUEUE_NAME", DEFAULT_QUEUE_NAME),
        dlq_name=_get("DLQ_NAME", DEFAULT_DLQ_NAME),
        worker_concurrency=int(_get("WORKER_CONCURRENCY", "1")),
        queue_max_attempts=int(_get("QUEUE_MAX_ATTEMPTS", "3")),
        queue_backoff_ms=int(_get("QUEUE_BACKOFF_MS", "2000")),
        queue_lease_ms=int(_get("QUEUE_LEASE_MS", "30000")),
        queue_poll_interval_sec=float(_get("QUEUE_POLL_INTERVAL_SEC", "0.5")),
        gcp_location=_get("GCP_LOCATION", "global"),
        gcs_folder_prefix=_get("GCS_FOLDER_PREFIX", "digitizer-app"),
        upload_timeout_sec=float(_get("UPLOAD_TIMEOUT_SEC", "30")),
        provider_timeout_sec=float(_get("PROVIDER_TIMEOUT_SEC", "60")),
        ocr_language_hints=hints or ("en", "hi", "kn"),
        credentials_json_b64=env.get("GOOGLE_APPLICATION_CREDENTIALS_JSON") or None,
    )
