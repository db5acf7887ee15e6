"""
Cardaverse Fulfillment API
FastAPI application for Shopify card orders: PDF composition, storage and
customer download emails.
"""

import logging
import os
from typing import List

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from app.routers import orders_webhook, upload
from app.services.storage import StoreError, check_bucket

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Cardaverse Fulfillment API",
    description="Custom card composition, storage and download emails for Shopify orders",
    version="0.1.0",
)


def get_cors_origins() -> List[str]:
    """
    Build the list of allowed CORS origins.

    Always includes the storefront (https://cardaverse.ai), which posts
    designer PDFs to /api/upload.

    Additional origins are read from the CORS_ORIGINS environment variable
    as a comma-separated list, e.g.:
        CORS_ORIGINS=http://localhost:3000,https://staging.cardaverse.ai

    Duplicates are removed while preserving order.
    """
    always_included = ["https://cardaverse.ai"]

    extra_origins: List[str] = []
    cors_env = os.getenv("CORS_ORIGINS", "").strip()
    if cors_env:
        extra_origins = [o.strip() for o in cors_env.split(",") if o.strip()]

    # Deduplicate while preserving order
    seen: set = set()
    origins: List[str] = []
    for origin in always_included + extra_origins:
        if origin not in seen:
            seen.add(origin)
            origins.append(origin)

    return origins


# CORS configuration: origins are resolved at startup from environment
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_methods=["POST"],
    allow_headers=["Content-Type"],
)

# Include routers
app.include_router(orders_webhook.router, prefix="/api/webhooks", tags=["webhooks"])
app.include_router(upload.router, prefix="/api", tags=["upload"])


@app.get("/")
async def root():
    return {"message": "Cardaverse Fulfillment API", "version": "0.1.0"}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/storage")
async def health_storage():
    """
    Test Supabase Storage access.

    Lists storage buckets and verifies the card bucket exists.
    Returns 503 if storage is unconfigured, unreachable or the bucket is missing.
    """
    try:
        bucket = check_bucket()
    except StoreError as exc:
        logger.error(f"Storage health check failed: {exc}")
        raise HTTPException(status_code=503, detail=str(exc))

    return {"status": "ok", "storage": "reachable", "bucket": bucket}
