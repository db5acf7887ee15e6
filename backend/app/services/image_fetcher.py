"""
Image fetching and validation for card composition.

Each card needs three source images (template, product, inside template).
They are downloaded concurrently and every body is checked to be a real PNG
before the composer is allowed to place it on a page.

Public API:
  validate_png_signature(data: bytes) -> None
  fetch_and_validate(url, *, client, timeout, validate) -> FetchedImage
  fetch_card_images(request, *, client, timeout, validate) -> CardImages
"""

import asyncio
import io
import logging
from typing import Optional

import httpx
from PIL import Image, UnidentifiedImageError

from app.models.card import CardImages, CardRequest, FetchedImage

logger = logging.getLogger(__name__)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

DEFAULT_FETCH_TIMEOUT = 15.0


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class FetchError(Exception):
    """Base class for image retrieval failures. Terminal; never retried."""

    reason = "fetch_failed"

    def __init__(self, message: str, url: str = "", slot: Optional[str] = None):
        super().__init__(message)
        self.url = url
        self.slot = slot


class UnreachableError(FetchError):
    """Transport error or non-success HTTP status."""

    reason = "unreachable"


class InvalidFormatError(FetchError):
    """The body is not a well-formed PNG."""

    reason = "invalid_format"


class FetchTimeoutError(FetchError):
    """The fetch exceeded its deadline."""

    reason = "timeout"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_png_signature(data: bytes, url: str = "") -> None:
    """
    Raise InvalidFormatError unless `data` starts with the 8-byte PNG signature.

    Applies to inputs of any length, including empty ones.
    """
    if data[: len(PNG_SIGNATURE)] != PNG_SIGNATURE:
        raise InvalidFormatError(
            f"Image at {url or '<bytes>'} does not have a PNG signature", url=url
        )


def _verify_png(data: bytes, url: str) -> None:
    """Decode the PNG structure with Pillow so truncated files are rejected too."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            if img.format != "PNG":
                raise InvalidFormatError(
                    f"Image at {url} decoded as {img.format}, expected PNG", url=url
                )
            img.verify()
    except InvalidFormatError:
        raise
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        raise InvalidFormatError(f"Image at {url} is not a valid PNG: {e}", url=url) from e


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------

async def fetch_and_validate(
    url: str,
    *,
    client: httpx.AsyncClient,
    timeout: Optional[float] = None,
    validate: bool = True,
) -> FetchedImage:
    """
    Download one image and check that it is a PNG.

    Args:
        url:      Image URL. Must be non-empty.
        client:   Shared async HTTP client.
        timeout:  Overall deadline in seconds for the request and its body
                  (None = DEFAULT_FETCH_TIMEOUT).
        validate: When False the body is passed through unchecked. Only the
                  legacy pipeline configuration turns this off.

    Returns:
        FetchedImage with the full response body.

    Raises:
        ValueError:          url is empty.
        UnreachableError:    transport failure or non-2xx status.
        FetchTimeoutError:   deadline exceeded, even while bytes are arriving.
        InvalidFormatError:  body is not a PNG.
    """
    if not url or not url.strip():
        raise ValueError("Image URL must be non-empty")

    deadline = timeout if timeout is not None else DEFAULT_FETCH_TIMEOUT

    # httpx's timeout applies per connect/read step; wait_for caps the whole
    # request including the body read.
    try:
        response = await asyncio.wait_for(
            client.get(url, timeout=deadline, follow_redirects=True),
            timeout=deadline,
        )
    except (httpx.TimeoutException, asyncio.TimeoutError) as e:
        raise FetchTimeoutError(
            f"Timed out fetching {url} after {deadline:g}s", url=url
        ) from e
    except httpx.HTTPError as e:
        raise UnreachableError(f"Failed to fetch {url}: {e}", url=url) from e

    if not response.is_success:
        raise UnreachableError(
            f"Fetching {url} returned HTTP {response.status_code}", url=url
        )

    data = response.content

    if not validate:
        fmt = "png" if data.startswith(PNG_SIGNATURE) else "unknown"
        return FetchedImage(url=url, data=data, format=fmt)

    validate_png_signature(data, url=url)
    _verify_png(data, url)
    return FetchedImage(url=url, data=data, format="png")


async def fetch_card_images(
    request: CardRequest,
    *,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = DEFAULT_FETCH_TIMEOUT,
    validate: bool = True,
) -> CardImages:
    """
    Fetch the template, product and inside images concurrently.

    All three must succeed. On the first failure the other in-flight fetches
    are cancelled and the error is re-raised with its `slot` set.
    """
    if client is None:
        async with httpx.AsyncClient() as own_client:
            return await fetch_card_images(
                request, client=own_client, timeout=timeout, validate=validate
            )

    tasks: dict[asyncio.Task, str] = {}
    for slot, url in request.image_refs().items():
        task = asyncio.create_task(
            fetch_and_validate(url, client=client, timeout=timeout, validate=validate)
        )
        tasks[task] = slot

    pending = set(tasks)
    try:
        while pending:
            done, pending = await asyncio.wait(
                pending, return_when=asyncio.FIRST_EXCEPTION
            )
            failed = [task for task in done if task.exception() is not None]
            if failed:
                exc = failed[0].exception()
                slot = tasks[failed[0]]
                if isinstance(exc, FetchError):
                    exc.slot = slot
                logger.warning(f"Fetch of {slot} image failed: {exc}")
                raise exc
    finally:
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    fetched = {slot: task.result() for task, slot in tasks.items()}
    return CardImages(**fetched)
