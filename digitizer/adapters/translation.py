# -*- coding: utf-8 -*-
"""
Translation through Google Cloud Translation (v3).
"""

import logging
from typing import Optional

from google.api_core import exceptions as gcp_exceptions
from google.cloud import translate_v3

from digitizer.adapters.ports import TranslationResult
from digitizer.errors import ExternalServiceError

logger = logging.getLogger("digitizer.adapters.translation")

SERVICE_NAME = "Google Cloud Translation"


class CloudTranslator:
    def __init__(
        self,
        project_id: str,
        location: str = "global",
        client: Optional[translate_v3.TranslationServiceAsyncClient] = None,
        timeout_sec: float = 60.0,
    ):
        self.parent = f"projects/{project_id}/locations/{location}"
        self._client = client
        self.timeout_sec = timeout_sec

    @property
    def client(self) -> translate_v3.TranslationServiceAsyncClient:
        if self._client is None:
            self._client = translate_v3.TranslationServiceAsyncClient()
        return self._client

    async def translate(self, text: str, target_language: str) -> TranslationResult:
        request = {
            "parent": self.parent,
            "contents": [text],
            "mime_type": "text/plain",
            "target_language_code": target_language,
        }

        try:
            response = await self.client.translate_text(request=request, timeout=self.timeout_sec)
        except gcp_exceptions.GoogleAPIError as exc:
            logger.error("translation_call_failed target=%s error=%s", target_language, exc)
            raise ExternalServiceError(SERVICE_NAME, f"Failed to translate text: {exc}") from exc

        translations = list(response.translations or [])
        translated = translations[0].translated_text if translations else ""
        if not translated:
            logger.error("translation_empty_result target=%s", target_language)
            raise ExternalServiceError(SERVICE_NAME, "Received an empty translation result.")

        detected = translations[0].detected_language_code or None
        logger.info("translation_completed target=%s detected=%s chars=%s", target_language, detected, len(translated))
        return TranslationResult(translated_text=translated, detected_language_code=detected)
