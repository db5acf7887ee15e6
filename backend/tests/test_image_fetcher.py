"""
Image fetcher / validator tests.

Covers:
  - validate_png_signature on valid, empty, short and foreign byte sequences
  - fetch_and_validate: success, HTTP errors, timeouts, non-PNG and
    truncated bodies, empty URL, validation switched off
  - fetch_card_images: concurrent fetch of the trio, slot tagging on failure,
    cancellation of in-flight fetches after the first failure

All HTTP traffic goes through httpx.MockTransport; no network calls.
"""

import asyncio
import io
import os

import httpx
import pytest
from PIL import Image

os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")

from app.models.card import CardRequest
from app.services.image_fetcher import (
    PNG_SIGNATURE,
    FetchError,
    FetchTimeoutError,
    InvalidFormatError,
    UnreachableError,
    fetch_and_validate,
    fetch_card_images,
    validate_png_signature,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _png_bytes(color=(200, 30, 30), size=(4, 4)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def _jpeg_bytes() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (4, 4), (0, 0, 255)).save(buf, format="JPEG")
    return buf.getvalue()


def _client_for(routes: dict) -> httpx.AsyncClient:
    """
    Build an AsyncClient whose transport answers from `routes`.

    routes maps URL -> (status_code, body bytes). Unknown URLs get 404.
    """
    def handler(request: httpx.Request) -> httpx.Response:
        status, body = routes.get(str(request.url), (404, b"not found"))
        return httpx.Response(status, content=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _card_request(**overrides) -> CardRequest:
    fields = {
        "message": "Happy Birthday",
        "product_image_ref": "https://cdn.example.com/product.png",
        "template_image_ref": "https://cdn.example.com/template.png",
        "inside_template_ref": "https://cdn.example.com/inside.png",
    }
    fields.update(overrides)
    return CardRequest(**fields)


# ===========================================================================
# validate_png_signature
# ===========================================================================

class TestValidatePngSignature:
    """The first 8 bytes must be exactly the PNG signature."""

    def test_real_png_passes(self):
        validate_png_signature(_png_bytes())

    def test_signature_alone_passes(self):
        validate_png_signature(PNG_SIGNATURE)

    @pytest.mark.parametrize(
        "data",
        [
            b"",
            PNG_SIGNATURE[:7],
            b"\x89PNG",
            b"GIF89a" + b"\x00" * 100,
            b"%PDF-1.4\n",
            b"<html>not an image</html>",
            b"\x00" * 4096,
            PNG_SIGNATURE[::-1],
        ],
        ids=["empty", "seven-bytes", "four-bytes", "gif", "pdf", "html", "zeros", "reversed"],
    )
    def test_non_png_bytes_rejected(self, data):
        with pytest.raises(InvalidFormatError):
            validate_png_signature(data)

    def test_jpeg_rejected(self):
        with pytest.raises(InvalidFormatError):
            validate_png_signature(_jpeg_bytes())

    def test_signature_must_be_at_start(self):
        with pytest.raises(InvalidFormatError):
            validate_png_signature(b"x" + _png_bytes())


# ===========================================================================
# fetch_and_validate
# ===========================================================================

class TestFetchAndValidate:
    """Single-image retrieval and validation."""

    @pytest.mark.asyncio
    async def test_success_returns_fetched_png(self):
        url = "https://cdn.example.com/a.png"
        body = _png_bytes()
        async with _client_for({url: (200, body)}) as client:
            image = await fetch_and_validate(url, client=client)

        assert image.url == url
        assert image.data == body
        assert image.format == "png"

    @pytest.mark.asyncio
    async def test_404_is_unreachable(self):
        url = "https://cdn.example.com/missing.png"
        async with _client_for({}) as client:
            with pytest.raises(UnreachableError) as exc_info:
                await fetch_and_validate(url, client=client)

        assert exc_info.value.url == url
        assert "404" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_500_is_unreachable(self):
        url = "https://cdn.example.com/a.png"
        async with _client_for({url: (500, b"boom")}) as client:
            with pytest.raises(UnreachableError):
                await fetch_and_validate(url, client=client)

    @pytest.mark.asyncio
    async def test_connect_error_is_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(UnreachableError):
                await fetch_and_validate("https://down.example.com/a.png", client=client)

    @pytest.mark.asyncio
    async def test_timeout_is_fetch_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(FetchTimeoutError):
                await fetch_and_validate(
                    "https://slow.example.com/a.png", client=client, timeout=0.5
                )

    @pytest.mark.asyncio
    async def test_slow_drip_body_hits_overall_deadline(self):
        """A server that keeps sending small chunks must not outlive the deadline."""
        async def drip():
            yield PNG_SIGNATURE
            for _ in range(20):
                await asyncio.sleep(0.3)
                yield b"\x00\x00\x00\x00"

        def handler(request):
            return httpx.Response(200, content=drip())

        loop = asyncio.get_running_loop()
        started = loop.time()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(FetchTimeoutError):
                await fetch_and_validate(
                    "https://slow.example.com/a.png", client=client, timeout=0.5
                )
        elapsed = loop.time() - started

        assert elapsed < 2.0

    @pytest.mark.asyncio
    async def test_non_png_body_is_invalid_format(self):
        url = "https://cdn.example.com/a.png"
        async with _client_for({url: (200, _jpeg_bytes())}) as client:
            with pytest.raises(InvalidFormatError):
                await fetch_and_validate(url, client=client)

    @pytest.mark.asyncio
    async def test_empty_body_is_invalid_format(self):
        url = "https://cdn.example.com/a.png"
        async with _client_for({url: (200, b"")}) as client:
            with pytest.raises(InvalidFormatError):
                await fetch_and_validate(url, client=client)

    @pytest.mark.asyncio
    async def test_signature_with_garbage_is_invalid_format(self):
        """A body that only imitates the header is still rejected."""
        url = "https://cdn.example.com/a.png"
        body = PNG_SIGNATURE + b"this is not a png chunk stream"
        async with _client_for({url: (200, body)}) as client:
            with pytest.raises(InvalidFormatError):
                await fetch_and_validate(url, client=client)

    @pytest.mark.asyncio
    async def test_empty_url_raises_value_error(self):
        async with _client_for({}) as client:
            with pytest.raises(ValueError):
                await fetch_and_validate("   ", client=client)

    @pytest.mark.asyncio
    async def test_validation_disabled_passes_bytes_through(self):
        url = "https://cdn.example.com/a.jpg"
        body = _jpeg_bytes()
        async with _client_for({url: (200, body)}) as client:
            image = await fetch_and_validate(url, client=client, validate=False)

        assert image.data == body
        assert image.format == "unknown"

    @pytest.mark.asyncio
    async def test_all_fetch_errors_share_base_class(self):
        url = "https://cdn.example.com/a.png"
        async with _client_for({url: (200, b"nope")}) as client:
            with pytest.raises(FetchError):
                await fetch_and_validate(url, client=client)


# ===========================================================================
# fetch_card_images
# ===========================================================================

class TestFetchCardImages:
    """Concurrent retrieval of the template / product / inside trio."""

    @pytest.mark.asyncio
    async def test_fetches_all_three_into_their_slots(self):
        request = _card_request()
        bodies = {
            request.template_image_ref: _png_bytes((10, 10, 10)),
            request.product_image_ref: _png_bytes((20, 20, 20)),
            request.inside_template_ref: _png_bytes((30, 30, 30)),
        }
        routes = {url: (200, body) for url, body in bodies.items()}

        async with _client_for(routes) as client:
            images = await fetch_card_images(request, client=client)

        assert images.template.data == bodies[request.template_image_ref]
        assert images.product.data == bodies[request.product_image_ref]
        assert images.inside.data == bodies[request.inside_template_ref]

    @pytest.mark.asyncio
    async def test_failure_is_tagged_with_slot(self):
        request = _card_request()
        routes = {
            request.product_image_ref: (200, _png_bytes()),
            request.inside_template_ref: (200, _png_bytes()),
            # template missing -> 404
        }

        async with _client_for(routes) as client:
            with pytest.raises(UnreachableError) as exc_info:
                await fetch_card_images(request, client=client)

        assert exc_info.value.slot == "template"
        assert exc_info.value.url == request.template_image_ref

    @pytest.mark.asyncio
    async def test_invalid_inside_image_is_tagged(self):
        request = _card_request()
        routes = {
            request.template_image_ref: (200, _png_bytes()),
            request.product_image_ref: (200, _png_bytes()),
            request.inside_template_ref: (200, b"GIF89a...."),
        }

        async with _client_for(routes) as client:
            with pytest.raises(InvalidFormatError) as exc_info:
                await fetch_card_images(request, client=client)

        assert exc_info.value.slot == "inside"

    @pytest.mark.asyncio
    async def test_first_failure_cancels_in_flight_fetches(self):
        request = _card_request()
        cancelled: list[str] = []

        async def handler(request_: httpx.Request) -> httpx.Response:
            url = str(request_.url)
            if url == request.template_image_ref:
                return httpx.Response(404)
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled.append(url)
                raise
            return httpx.Response(200, content=_png_bytes())

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(UnreachableError):
                await asyncio.wait_for(fetch_card_images(request, client=client), timeout=5)

        assert sorted(cancelled) == sorted(
            [request.product_image_ref, request.inside_template_ref]
        )

    @pytest.mark.asyncio
    async def test_fetches_run_concurrently(self):
        """All three fetches are in flight at the same time."""
        request = _card_request()
        active = 0
        peak = 0

        async def handler(request_: httpx.Request) -> httpx.Response:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.2)
            active -= 1
            return httpx.Response(200, content=_png_bytes())

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await fetch_card_images(request, client=client)

        assert peak == 3
