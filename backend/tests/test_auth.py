"""
Unit tests for Shopify webhook authentication.
Tests HMAC computation, constant-time verification and the FastAPI dependency.
"""

import base64
import hashlib
import hmac
import os
from unittest.mock import AsyncMock, Mock, patch

import pytest
from fastapi import HTTPException

# Mock environment variables before importing app modules
os.environ.setdefault('SUPABASE_URL', 'https://test.supabase.co')

from app.auth import compute_shopify_hmac, verify_shopify_hmac, verify_shopify_webhook

SECRET = "shpss_test_secret"
BODY = b'{"id": 1, "order_number": 1042}'


def _signature(body: bytes = BODY, secret: str = SECRET) -> str:
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


def _request(body: bytes = BODY) -> Mock:
    request = Mock()
    request.body = AsyncMock(return_value=body)
    return request


class TestComputeShopifyHmac:

    def test_matches_reference_digest(self):
        assert compute_shopify_hmac(BODY, SECRET) == _signature()

    def test_depends_on_body(self):
        assert compute_shopify_hmac(BODY, SECRET) != compute_shopify_hmac(BODY + b" ", SECRET)


class TestVerifyShopifyHmac:

    def test_valid_signature(self):
        assert verify_shopify_hmac(BODY, _signature(), SECRET) is True

    def test_surrounding_whitespace_ignored(self):
        assert verify_shopify_hmac(BODY, f"  {_signature()} ", SECRET) is True

    def test_wrong_secret(self):
        assert verify_shopify_hmac(BODY, _signature(secret="other"), SECRET) is False

    def test_tampered_body(self):
        assert verify_shopify_hmac(b'{"id": 2}', _signature(), SECRET) is False

    @pytest.mark.parametrize("provided", [None, ""])
    def test_missing_signature(self, provided):
        assert verify_shopify_hmac(BODY, provided, SECRET) is False


class TestVerifyShopifyWebhook:
    """Test the dependency guarding the orders webhook."""

    @pytest.mark.asyncio
    async def test_valid_domain_and_signature_pass(self):
        env = {
            "SHOPIFY_SHOP_DOMAIN": "cardaverse.myshopify.com",
            "SHOPIFY_WEBHOOK_SECRET": SECRET,
            "SHOPIFY_VERIFY_HMAC": "true",
        }
        with patch.dict(os.environ, env):
            result = await verify_shopify_webhook(
                _request(), "cardaverse.myshopify.com", _signature()
            )
        assert result is None

    @pytest.mark.asyncio
    async def test_wrong_domain_raises_403(self):
        with patch.dict(os.environ, {"SHOPIFY_SHOP_DOMAIN": "cardaverse.myshopify.com"}):
            with pytest.raises(HTTPException) as exc_info:
                await verify_shopify_webhook(_request(), "evil.myshopify.com", _signature())

        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_domain_checked_before_signature(self):
        request = _request()
        env = {"SHOPIFY_SHOP_DOMAIN": "cardaverse.myshopify.com", "SHOPIFY_WEBHOOK_SECRET": SECRET}
        with patch.dict(os.environ, env):
            with pytest.raises(HTTPException) as exc_info:
                await verify_shopify_webhook(request, None, None)

        assert exc_info.value.status_code == 403
        request.body.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bad_signature_raises_401(self):
        env = {"SHOPIFY_SHOP_DOMAIN": "", "SHOPIFY_WEBHOOK_SECRET": SECRET, "SHOPIFY_VERIFY_HMAC": "true"}
        with patch.dict(os.environ, env):
            with pytest.raises(HTTPException) as exc_info:
                await verify_shopify_webhook(_request(), None, "bm90LXRoZS1zaWduYXR1cmU=")

        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == "Unauthorized"

    @pytest.mark.asyncio
    async def test_hmac_check_can_be_disabled(self):
        env = {"SHOPIFY_SHOP_DOMAIN": "", "SHOPIFY_WEBHOOK_SECRET": SECRET, "SHOPIFY_VERIFY_HMAC": "false"}
        with patch.dict(os.environ, env):
            assert await verify_shopify_webhook(_request(), None, None) is None

    @pytest.mark.asyncio
    async def test_no_secret_skips_hmac(self):
        env = {"SHOPIFY_SHOP_DOMAIN": "", "SHOPIFY_WEBHOOK_SECRET": ""}
        with patch.dict(os.environ, env):
            assert await verify_shopify_webhook(_request(), None, None) is None
