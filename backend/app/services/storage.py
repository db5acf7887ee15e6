"""
Supabase Storage service for card documents.
Handles upload of composed or customer-uploaded PDFs and signed URL generation.
"""

import os
import re
import time
from urllib.parse import urlparse, urlunparse
from uuid import uuid4

from app.db import supabase_admin

DEFAULT_BUCKET = "cards"

# 30 days, matching the link validity promised in the customer email
DEFAULT_LINK_EXPIRY_SECONDS = 30 * 24 * 3600

# suggested_format -> content type for raw document uploads
_CONTENT_TYPES = {
    "pdf": "application/pdf",
}


class StoreError(Exception):
    """Upload or URL generation against the blob store failed."""


def _get_bucket() -> str:
    return os.getenv("CARD_STORAGE_BUCKET", DEFAULT_BUCKET).strip() or DEFAULT_BUCKET


def _get_link_expiry() -> int:
    raw = os.getenv("CARD_LINK_EXPIRY_SECONDS", "").strip()
    try:
        expiry = int(raw) if raw else DEFAULT_LINK_EXPIRY_SECONDS
    except ValueError:
        return DEFAULT_LINK_EXPIRY_SECONDS
    return expiry if expiry > 0 else DEFAULT_LINK_EXPIRY_SECONDS


def generate_name_hint(prefix: str = "card") -> str:
    """
    Return a collision-resistant file stem, e.g. "card_1718000000000_1a2b3c4d".

    Millisecond timestamp keeps names sortable; the random suffix separates
    documents generated in the same millisecond.
    """
    return f"{prefix}_{int(time.time() * 1000)}_{uuid4().hex[:8]}"


def _rewrite_signed_url_host(signed_url: str) -> str:
    """
    Replace the host in a signed URL with the browser-accessible Supabase URL.

    When the backend runs inside Docker it uses an internal URL like
    ``http://host.docker.internal:54321`` so it can reach the Supabase API.
    Supabase embeds that internal host in every signed URL it generates, making
    those URLs unreachable from the customer's mail client.

    If ``SUPABASE_PUBLIC_URL`` is set it is used as the replacement origin.
    Otherwise the URL is returned unchanged, which is correct for production
    deployments where the backend and Supabase share the same public URL.
    """
    public_url = os.getenv("SUPABASE_PUBLIC_URL", "").strip()
    if not public_url:
        return signed_url

    parsed_signed = urlparse(signed_url)
    parsed_public = urlparse(public_url)

    # Swap scheme + netloc; keep path/query/fragment from the signed URL.
    rewritten = urlunparse((
        parsed_public.scheme,
        parsed_public.netloc,
        parsed_signed.path,
        parsed_signed.params,
        parsed_signed.query,
        parsed_signed.fragment,
    ))
    return rewritten


def get_signed_url(storage_path: str, expiry_seconds: int | None = None) -> str:
    """
    Generate a signed download URL for a stored card document.

    Args:
        storage_path: Path inside the card bucket (e.g. "cards/card_123.pdf")
        expiry_seconds: URL lifetime; defaults to CARD_LINK_EXPIRY_SECONDS (30 days)

    Returns:
        Signed URL with a browser-accessible host.

    Raises:
        StoreError: If URL generation fails
    """
    if not supabase_admin:
        raise StoreError("SUPABASE_SERVICE_KEY is required for storage operations")

    expiry = expiry_seconds if expiry_seconds is not None else _get_link_expiry()

    try:
        result = supabase_admin.storage.from_(_get_bucket()).create_signed_url(
            storage_path,
            expiry,
        )
    except Exception as e:
        raise StoreError(f"Failed to generate signed URL: {str(e)}") from e

    signed = None
    if result:
        signed = result.get("signedURL") or result.get("signedUrl")
    if not signed:
        raise StoreError("No signed URL returned from storage")

    return _rewrite_signed_url_host(signed)


def store_document(
    data: bytes,
    *,
    folder: str,
    name_hint: str,
    resource_kind: str = "raw",
    suggested_format: str = "pdf",
) -> str:
    """
    Upload a document to the card bucket and return a download URL.

    Storage path: {folder}/{sanitized name_hint}.{suggested_format}
    Uploads never overwrite: name hints are expected to be unique.

    Args:
        data: Binary document content
        folder: Folder inside the bucket (e.g. "cards")
        name_hint: File stem, normally from generate_name_hint()
        resource_kind: Must be "raw"; card documents are multi-page files,
            not displayable images
        suggested_format: File format, currently only "pdf"

    Returns:
        Signed download URL

    Raises:
        ValueError: Unsupported resource_kind / suggested_format
        StoreError: If the upload or URL generation fails
    """
    if resource_kind != "raw":
        raise ValueError(f"Unsupported resource kind {resource_kind!r}; documents are stored as 'raw'")
    content_type = _CONTENT_TYPES.get(suggested_format)
    if content_type is None:
        raise ValueError(
            f"Unsupported document format {suggested_format!r}. "
            f"Supported: {sorted(_CONTENT_TYPES)}"
        )

    if not supabase_admin:
        raise StoreError("SUPABASE_SERVICE_KEY is required for storage operations")

    sanitized_folder = re.sub(r"[^\w\-/]", "_", folder).strip("/")
    sanitized_name = re.sub(r"[^\w\-.]", "_", name_hint)
    storage_path = f"{sanitized_folder}/{sanitized_name}.{suggested_format}"

    try:
        supabase_admin.storage.from_(_get_bucket()).upload(
            storage_path,
            data,
            {
                "content-type": content_type,
                "upsert": "false",
            }
        )
    except Exception as e:
        raise StoreError(f"Failed to upload document to storage: {str(e)}") from e

    return get_signed_url(storage_path)


def check_bucket() -> str:
    """
    Verify the card bucket exists. Used by the storage health check.

    Returns the bucket name.

    Raises:
        StoreError: If storage is unconfigured, unreachable or the bucket is missing
    """
    if not supabase_admin:
        raise StoreError("SUPABASE_SERVICE_KEY is required for storage operations")

    bucket = _get_bucket()
    try:
        buckets = supabase_admin.storage.list_buckets()
    except Exception as e:
        raise StoreError(f"Storage check failed: {str(e)}") from e

    if bucket not in [b.name for b in buckets]:
        raise StoreError(f"Storage bucket '{bucket}' not found")
    return bucket
