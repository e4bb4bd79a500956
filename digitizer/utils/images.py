import io

from PIL import Image, UnidentifiedImageError

from digitizer.errors import ValidationError

MAX_IMAGE_BYTES = 5 * 1024 * 1024

_CONTENT_TYPES = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
}


def detect_image_format(image_bytes: bytes) -> str:
    """Return the content type of a supported image or raise ValidationError."""
    if not image_bytes:
        raise ValidationError("Image is empty.")
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            fmt = (img.format or "").upper()
    except (UnidentifiedImageError, OSError) as exc:
        raise ValidationError("File is not a readable image.") from exc

    content_type = _CONTENT_TYPES.get(fmt)
    if content_type is None:
        raise ValidationError("Only .jpg, .jpeg, .png and .webp formats are supported.")
    return content_type


def validate_image(image_bytes: bytes, max_bytes: int = MAX_IMAGE_BYTES) -> str:
    if len(image_bytes) > max_bytes:
        raise ValidationError(f"Max image size is {max_bytes // (1024 * 1024)}MB.")
    return detect_image_format(image_bytes)
