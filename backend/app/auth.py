"""
Shopify webhook authentication.

Two independent checks guard the order webhook:

- Shop domain: X-Shopify-Shop-Domain must match SHOPIFY_SHOP_DOMAIN. Skipped
  when SHOPIFY_SHOP_DOMAIN is not configured.
- HMAC: X-Shopify-Hmac-Sha256 must equal base64(HMAC-SHA256(secret, raw body)).
  Skipped when SHOPIFY_WEBHOOK_SECRET is not configured or
  SHOPIFY_VERIFY_HMAC=false.
"""

import base64
import hashlib
import hmac
import logging
import os
from typing import Optional

from fastapi import Header, HTTPException, Request

logger = logging.getLogger(__name__)


def _hmac_enabled() -> bool:
    """HMAC verification is on unless explicitly disabled."""
    return os.getenv("SHOPIFY_VERIFY_HMAC", "true").strip().lower() not in ("0", "false", "no", "off")


def compute_shopify_hmac(body: bytes, secret: str) -> str:
    """Return the base64 HMAC-SHA256 digest Shopify sends for `body`."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_shopify_hmac(body: bytes, provided: Optional[str], secret: str) -> bool:
    """Constant-time comparison of the provided header against the expected digest."""
    if not provided:
        return False
    expected = compute_shopify_hmac(body, secret)
    return hmac.compare_digest(expected, provided.strip())


async def verify_shopify_webhook(
    request: Request,
    x_shopify_shop_domain: Optional[str] = Header(None),
    x_shopify_hmac_sha256: Optional[str] = Header(None),
) -> None:
    """
    FastAPI dependency that authenticates an incoming Shopify webhook.

    Raises:
        HTTPException: 403 if the shop domain does not match,
                       401 if the HMAC signature is missing or invalid
    """
    expected_domain = os.getenv("SHOPIFY_SHOP_DOMAIN", "").strip()
    if expected_domain and x_shopify_shop_domain != expected_domain:
        logger.error(f"Invalid Shopify domain: {x_shopify_shop_domain!r}")
        raise HTTPException(status_code=403, detail="Forbidden")

    secret = os.getenv("SHOPIFY_WEBHOOK_SECRET", "")
    if not secret or not _hmac_enabled():
        return

    body = await request.body()
    if not verify_shopify_hmac(body, x_shopify_hmac_sha256, secret):
        logger.error("Webhook HMAC verification failed")
        raise HTTPException(status_code=401, detail="Unauthorized")
