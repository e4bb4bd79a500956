import io
import time
import unittest
from unittest import mock

import httpx
from google.api_core import exceptions as gcp_exceptions
from google.cloud import translate_v3, vision
from PIL import Image

from digitizer.adapters.recognition import VisionTextRecognizer
from digitizer.adapters.translation import CloudTranslator
from digitizer.errors import ExternalServiceError, ValidationError
from digitizer.utils.download import download_file_as_bytes
from digitizer.utils.gcs import GcsImageStorage
from digitizer.utils.images import detect_image_format, validate_image


def image_bytes(fmt: str) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (4, 4), "black").save(buf, format=fmt)
    return buf.getvalue()


class VisionTextRecognizerUnitTests(unittest.IsolatedAsyncioTestCase):
    def _recognizer(self, response=None, side_effect=None):
        client = mock.Mock()
        client.batch_annotate_images = mock.AsyncMock(return_value=response, side_effect=side_effect)
        return VisionTextRecognizer(client=client, timeout_sec=5), client

    async def test_returns_full_text(self):
        response = vision.BatchAnnotateImagesResponse(
            responses=[vision.AnnotateImageResponse(full_text_annotation=vision.TextAnnotation(text=" Hello\nworld "))]
        )
        recognizer, client = self._recognizer(response)

        text = await recognizer.recognize("gs://bucket/page.png", ["en", "kn"])

        self.assertEqual(text, "Hello\nworld")
        kwargs = client.batch_annotate_images.await_args.kwargs
        self.assertEqual(kwargs["timeout"], 5)
        request = kwargs["requests"][0]
        self.assertEqual(request.image.source.image_uri, "gs://bucket/page.png")
        self.assertEqual(list(request.image_context.language_hints), ["en", "kn"])

    async def test_empty_text_is_an_error(self):
        recognizer, _ = self._recognizer(vision.BatchAnnotateImagesResponse(responses=[vision.AnnotateImageResponse()]))
        with self.assertRaises(ExternalServiceError) as ctx:
            await recognizer.recognize("gs://bucket/blank.png", [])
        self.assertEqual(ctx.exception.message, "[Google Cloud Vision]: No text found in the image.")

    async def test_per_image_error(self):
        response = vision.BatchAnnotateImagesResponse(
            responses=[vision.AnnotateImageResponse(error={"code": 3, "message": "Bad image data."})]
        )
        recognizer, _ = self._recognizer(response)
        with self.assertRaises(ExternalServiceError) as ctx:
            await recognizer.recognize("gs://bucket/bad.png", [])
        self.assertIn("Bad image data.", ctx.exception.message)

    async def test_api_error(self):
        recognizer, _ = self._recognizer(side_effect=gcp_exceptions.ServiceUnavailable("unavailable"))
        with self.assertRaises(ExternalServiceError):
            await recognizer.recognize("gs://bucket/page.png", [])


class CloudTranslatorUnitTests(unittest.IsolatedAsyncioTestCase):
    def _translator(self, response=None, side_effect=None):
        client = mock.Mock()
        client.translate_text = mock.AsyncMock(return_value=response, side_effect=side_effect)
        return CloudTranslator("proj", client=client, timeout_sec=5), client

    async def test_translates_and_reports_detected_language(self):
        response = translate_v3.TranslateTextResponse(
            translations=[translate_v3.Translation(translated_text="Bonjour", detected_language_code="en")]
        )
        translator, client = self._translator(response)

        result = await translator.translate("Hello", "fr")

        self.assertEqual(result.translated_text, "Bonjour")
        self.assertEqual(result.detected_language_code, "en")
        request = client.translate_text.await_args.kwargs["request"]
        self.assertEqual(request["parent"], "projects/proj/locations/global")
        self.assertEqual(request["contents"], ["Hello"])
        self.assertEqual(request["target_language_code"], "fr")

    async def test_missing_detected_language_is_none(self):
        response = translate_v3.TranslateTextResponse(translations=[translate_v3.Translation(translated_text="Hola")])
        translator, _ = self._translator(response)
        self.assertIsNone((await translator.translate("Hello", "es")).detected_language_code)

    async def test_empty_result_is_an_error(self):
        translator, _ = self._translator(translate_v3.TranslateTextResponse())
        with self.assertRaises(ExternalServiceError) as ctx:
            await translator.translate("Hello", "fr")
        self.assertEqual(ctx.exception.message, "[Google Cloud Translation]: Received an empty translation result.")

    async def test_api_error(self):
        translator, _ = self._translator(side_effect=gcp_exceptions.BadRequest("bad language"))
        with self.assertRaises(ExternalServiceError):
            await translator.translate("Hello", "zz")


class ImagesUnitTests(unittest.TestCase):
    def test_supported_formats(self):
        self.assertEqual(detect_image_format(image_bytes("PNG")), "image/png")
        self.assertEqual(detect_image_format(image_bytes("JPEG")), "image/jpeg")
        self.assertEqual(detect_image_format(image_bytes("WEBP")), "image/webp")

    def test_unsupported_format(self):
        with self.assertRaises(ValidationError):
            detect_image_format(image_bytes("BMP"))

    def test_size_limit(self):
        with self.assertRaises(ValidationError) as ctx:
            validate_image(b"x" * (5 * 1024 * 1024 + 1))
        self.assertEqual(ctx.exception.message, "Max image size is 5MB.")


class GcsImageStorageUnitTests(unittest.IsolatedAsyncioTestCase):
    async def test_upload_returns_signed_url(self):
        client = mock.Mock()
        blob = client.bucket.return_value.blob.return_value
        blob.generate_signed_url.return_value = "https://signed.example/x.png"
        storage = GcsImageStorage("bucket", client=client, timeout_sec=5)

        url = await storage.upload_image(image_bytes("PNG"), "direct-uploads")

        self.assertEqual(url, "https://signed.example/x.png")
        path = client.bucket.return_value.blob.call_args.args[0]
        self.assertTrue(path.startswith("digitizer-app/direct-uploads/"))
        self.assertTrue(path.endswith(".png"))
        self.assertEqual(blob.upload_from_string.call_args.kwargs["content_type"], "image/png")

    async def test_upload_error_is_external_service_error(self):
        client = mock.Mock()
        client.bucket.return_value.blob.return_value.upload_from_string.side_effect = gcp_exceptions.Forbidden("denied")
        storage = GcsImageStorage("bucket", client=client)

        with self.assertRaises(ExternalServiceError) as ctx:
            await storage.upload_image(image_bytes("PNG"), "url-uploads")
        self.assertTrue(ctx.exception.message.startswith("[Google Cloud Storage]:"))

    async def test_upload_timeout(self):
        client = mock.Mock()

        def slow_upload(*args, **kwargs):
            time.sleep(0.3)

        client.bucket.return_value.blob.return_value.upload_from_string.side_effect = slow_upload
        storage = GcsImageStorage("bucket", client=client, timeout_sec=0.05)

        with self.assertRaises(ExternalServiceError) as ctx:
            await storage.upload_image(image_bytes("PNG"), "url-uploads")
        self.assertIn("timed out", ctx.exception.message)

    def test_client_is_built_from_credentials_on_first_use(self):
        storage = GcsImageStorage("bucket", credentials_b64="e30=", folder_prefix="/scans/")

        with mock.patch("digitizer.utils.gcs.build_client") as build_client:
            self.assertIs(storage.client, build_client.return_value)
            self.assertIs(storage.client, build_client.return_value)
        build_client.assert_called_once_with("e30=")
        self.assertEqual(storage.folder_prefix, "scans")


class DownloadUnitTests(unittest.IsolatedAsyncioTestCase):
    async def test_download(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=b"abc"))
        async with httpx.AsyncClient(transport=transport) as client:
            data = await download_file_as_bytes("https://img.example/a.png", client=client)
        self.assertEqual(data, b"abc")

    async def test_http_error_status(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(404))
        async with httpx.AsyncClient(transport=transport) as client:
            with self.assertRaises(ExternalServiceError) as ctx:
                await download_file_as_bytes("https://img.example/missing.png", client=client)
        self.assertIn("404", ctx.exception.message)

    async def test_oversized_body(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=b"x" * 100))
        async with httpx.AsyncClient(transport=transport) as client:
            with self.assertRaises(ExternalServiceError):
                await download_file_as_bytes("https://img.example/big.png", client=client, max_bytes=10)


if __name__ == "__main__":
    unittest.main()
