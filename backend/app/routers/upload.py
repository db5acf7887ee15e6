"""
Card PDF upload router.

The storefront card designer renders a PDF in the browser and posts it here;
the file is stored and a download URL returned, which the storefront then
attaches to the cart line item as its design URL.

Endpoints:
  POST /upload   multipart form with a "pdf" file field
"""

import asyncio
import logging
import os
from typing import Optional

from fastapi import APIRouter, File, HTTPException, UploadFile

from app.services.storage import StoreError, generate_name_hint, store_document

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_upload_folder() -> str:
    return os.getenv("CARD_UPLOAD_FOLDER", "cards").strip() or "cards"


@router.post("/upload")
async def upload_card_pdf(pdf: Optional[UploadFile] = File(None)) -> dict:
    """
    Store an uploaded card PDF and return its download URL.

    Raises:
        HTTPException: 400 if no file (or an empty file) was sent,
                       500 if storage fails
    """
    if pdf is None:
        raise HTTPException(status_code=400, detail="No PDF file uploaded")

    content = await pdf.read()
    if not content:
        raise HTTPException(status_code=400, detail="No PDF file uploaded")

    try:
        file_url = await asyncio.to_thread(
            store_document,
            content,
            folder=_get_upload_folder(),
            name_hint=generate_name_hint(),
            resource_kind="raw",
            suggested_format="pdf",
        )
    except StoreError as e:
        logger.error(f"Card PDF upload failed: {e}")
        raise HTTPException(status_code=500, detail="Upload failed")

    logger.info(f"Stored uploaded card PDF ({len(content)} bytes)")
    return {"file_url": file_url}
