# -*- coding: utf-8 -*-
"""
Text recognition through Google Cloud Vision document text detection.
"""

import logging
import time
from typing import Optional, Sequence

from google.api_core import exceptions as gcp_exceptions
from google.cloud import vision

from digitizer.errors import ExternalServiceError

logger = logging.getLogger("digitizer.adapters.recognition")

SERVICE_NAME = "Google Cloud Vision"


class VisionTextRecognizer:
    def __init__(self, client: Optional[vision.ImageAnnotatorAsyncClient] = None, timeout_sec: float = 60.0):
        self._client = client
        self.timeout_sec = timeout_sec

    @property
    def client(self) -> vision.ImageAnnotatorAsyncClient:
        if self._client is None:
            self._client = vision.ImageAnnotatorAsyncClient()
        return self._client

    async def recognize(self, image_uri: str, language_hints: Sequence[str]) -> str:
        request = vision.AnnotateImageRequest(
            image=vision.Image(source=vision.ImageSource(image_uri=image_uri)),
            features=[vision.Feature(type_=vision.Feature.Type.DOCUMENT_TEXT_DETECTION)],
            image_context=vision.ImageContext(language_hints=list(language_hints or [])),
        )

        logger.info("vision_ocr_started image_uri=%s language_hints=%s", image_uri, list(language_hints or []))
        t0 = time.perf_counter()
        try:
            response = await self.client.batch_annotate_images(requests=[request], timeout=self.timeout_sec)
        except gcp_exceptions.GoogleAPIError as exc:
            logger.error("vision_ocr_call_failed image_uri=%s error=%s", image_uri, exc)
            raise ExternalServiceError(SERVICE_NAME, f"Failed to recognize text: {exc}") from exc

        dt = round(time.perf_counter() - t0, 2)
        result = response.responses[0] if response.responses else None
        if result is not None and result.error and result.error.message:
            logger.error("vision_ocr_image_error image_uri=%s error=%s", image_uri, result.error.message)
            raise ExternalServiceError(SERVICE_NAME, f"Failed to recognize text: {result.error.message}")

        text = ""
        if result is not None and result.full_text_annotation:
            text = (result.full_text_annotation.text or "").strip()
        if not text:
            logger.warning("vision_ocr_no_text image_uri=%s duration_sec=%s", image_uri, dt)
            raise ExternalServiceError(SERVICE_NAME, "No text found in the image.")

        logger.info("vision_ocr_completed image_uri=%s chars=%s duration_sec=%s", image_uri, len(text), dt)
        return text
