"""Call contracts of the remote providers the pipeline depends on."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Sequence


@dataclass(frozen=True)
class TranslationResult:
    translated_text: str
    detected_language_code: Optional[str] = None


class TextRecognizer(Protocol):
    async def recognize(self, image_uri: str, language_hints: Sequence[str]) -> str: ...


class Translator(Protocol):
    async def translate(self, text: str, target_language: str) -> TranslationResult: ...


class BlobUploader(Protocol):
    async def upload_image(self, image_bytes: bytes, folder: str) -> str: ...
