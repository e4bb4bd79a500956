# digitizer/utils/gcs.py
# -*- coding: utf-8 -*-

import asyncio
import base64
import json
import logging
import time
import uuid
from datetime import timedelta
from typing import Optional

from google.api_core import exceptions as gcp_exceptions
from google.cloud import storage
from google.oauth2 import service_account

from digitizer.errors import ExternalServiceError
from digitizer.utils.images import detect_image_format

logger = logging.getLogger(__name__)

SERVICE_NAME = "Google Cloud Storage"

_EXTENSIONS = {"image/jpeg": ".jpg", "image/png": ".png", "image/webp": ".webp"}


def load_credentials(credentials_b64: Optional[str] = None) -> Optional[service_account.Credentials]:
    """
    Decode base64-encoded service account JSON (GOOGLE_APPLICATION_CREDENTIALS_JSON).
    Returns None when unset so clients fall back to ambient ADC credentials.
    """
    if not credentials_b64:
        return None
    info = json.loads(base64.b64decode(credentials_b64))
    return service_account.Credentials.from_service_account_info(info)


def build_client(credentials_b64: Optional[str] = None) -> storage.Client:
    credentials = load_credentials(credentials_b64)
    if credentials is not None:
        return storage.Client(project=credentials.project_id, credentials=credentials)
    return storage.Client()


class GcsImageStorage:
    """
    Uploads source images and hands back a browser-downloadable URL.

    The google-cloud-storage client is synchronous; uploads run in a thread
    and are bounded by `timeout_sec` end to end.
    """

    def __init__(
        self,
        bucket_name: str,
        *,
        client: Optional[storage.Client] = None,
        credentials_b64: Optional[str] = None,
        folder_prefix: str = "digitizer-app",
        timeout_sec: float = 30.0,
        url_expires_days: int = 7,
    ):
        self.bucket_name = bucket_name
        self._client = client
        self.credentials_b64 = credentials_b64
        self.folder_prefix = folder_prefix.strip("/")
        self.timeout_sec = timeout_sec
        self.url_expires_days = url_expires_days

    @property
    def client(self) -> storage.Client:
        if self._client is None:
            self._client = build_client(self.credentials_b64)
        return self._client

    def _upload_sync(self, image_bytes: bytes, destination_path: str, content_type: str) -> str:
        blob = self.client.bucket(self.bucket_name).blob(destination_path)
        blob.upload_from_string(image_bytes, content_type=content_type, timeout=self.timeout_sec)
        return blob.generate_signed_url(
            version="v4",
            expiration=timedelta(days=self.url_expires_days),
            method="GET",
        )

    async def upload_image(self, image_bytes: bytes, folder: str) -> str:
        content_type = detect_image_format(image_bytes)
        destination_path = f"{self.folder_prefix}/{folder.strip('/')}/{uuid.uuid4().hex}{_EXTENSIONS[content_type]}"

        logger.info("gcs_upload_started path=%s bytes=%s", destination_path, len(image_bytes))
        t0 = time.perf_counter()
        try:
            url = await asyncio.wait_for(
                asyncio.to_thread(self._upload_sync, image_bytes, destination_path, content_type),
                timeout=self.timeout_sec,
            )
        except asyncio.TimeoutError as exc:
            logger.error("gcs_upload_timeout path=%s timeout_sec=%s", destination_path, self.timeout_sec)
            raise ExternalServiceError(SERVICE_NAME, f"Upload timed out after {self.timeout_sec}s.") from exc
        except (gcp_exceptions.GoogleAPIError, OSError) as exc:
            logger.error("gcs_upload_failed path=%s error=%s", destination_path, exc)
            raise ExternalServiceError(SERVICE_NAME, f"Failed to upload image: {exc}") from exc

        logger.info(
            "gcs_upload_completed path=%s duration_sec=%s",
            destination_path,
            round(time.perf_counter() - t0, 2),
        )
        return url

    def bucket_exists(self) -> bool:
        return self.client.bucket(self.bucket_name).exists()
