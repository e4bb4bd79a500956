import logging
from typing import Optional

import httpx

from digitizer.errors import ExternalServiceError
from digitizer.utils.images import MAX_IMAGE_BYTES

logger = logging.getLogger("digitizer.download")

SERVICE_NAME = "Image download"


async def download_file_as_bytes(
    url: str,
    *,
    timeout_sec: float = 30.0,
    max_bytes: int = MAX_IMAGE_BYTES,
    client: Optional[httpx.AsyncClient] = None,
) -> bytes:
    """Fetch `url` into memory, refusing bodies larger than `max_bytes`."""
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=timeout_sec, follow_redirects=True)
    try:
        async with client.stream("GET", url) as response:
            response.raise_for_status()
            chunks = []
            size = 0
            async for chunk in response.aiter_bytes():
                size += len(chunk)
                if size > max_bytes:
                    raise ExternalServiceError(SERVICE_NAME, f"Image at {url} is larger than {max_bytes} bytes.")
                chunks.append(chunk)
    except httpx.HTTPStatusError as exc:
        logger.error("download_failed url=%s status=%s", url, exc.response.status_code)
        raise ExternalServiceError(SERVICE_NAME, f"GET {url} returned {exc.response.status_code}.") from exc
    except httpx.HTTPError as exc:
        logger.error("download_failed url=%s error=%s", url, exc)
        raise ExternalServiceError(SERVICE_NAME, f"GET {url} failed: {exc}") from exc
    finally:
        if owns_client:
            await client.aclose()

    logger.info("download_completed url=%s bytes=%s", url, size)
    return b"".join(chunks)
