"""
Shopify order webhook router.

Receives orders/paid webhooks, picks out card line items and fulfills them:
pre-designed cards are linked directly, personalised cards are composed into
a PDF, uploaded, and linked. The customer then gets one email with all links.

Shopify retries any webhook that is not answered with 2xx, so every request
that passes authentication is acknowledged with 200, even when the body is
unusable or processing fails. Failures are visible in the logs only.

Environment variables
---------------------
CARD_WEBHOOK_MODE   "background" (default): acknowledge immediately and
                    fulfill in a background task.
                    "sync": fulfill before responding and return the
                    per-item summary (local debugging).

Endpoints:
  POST /orders   Shopify orders webhook (auth: shop domain + HMAC)
"""

import json
import logging
import os

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from pydantic import ValidationError

from app.auth import verify_shopify_webhook
from app.models.order import Order, WebhookAck
from app.services.fulfillment import (
    load_pipeline_config,
    process_order,
    run_order_fulfillment,
    select_card_items,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_webhook_mode() -> str:
    mode = os.getenv("CARD_WEBHOOK_MODE", "background").strip().lower()
    if mode not in ("background", "sync"):
        logger.warning(f"Unknown CARD_WEBHOOK_MODE {mode!r}, using 'background'")
        return "background"
    return mode


@router.post("/orders")
async def receive_order_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    _: None = Depends(verify_shopify_webhook),
) -> dict:
    """
    Acknowledge a Shopify order webhook and fulfill its card line items.

    Always returns 200 once authenticated.
    """
    try:
        payload = json.loads(await request.body())
        order = Order.model_validate(payload)
    except (ValueError, ValidationError) as exc:
        logger.error(f"Unusable order webhook payload: {exc}")
        return WebhookAck(processed=False, reason="invalid_payload").model_dump(exclude_none=True)

    config = load_pipeline_config()
    cards = select_card_items(order, config)
    if not cards:
        logger.info(f"Order {order.order_number} contains no card items, skipping")
        return WebhookAck(processed=False, reason="no_card_items").model_dump(exclude_none=True)

    if _get_webhook_mode() == "sync":
        try:
            result = await process_order(order, config)
        except Exception as exc:
            logger.exception(f"Order {order.order_number} processing failed: {exc}")
            return WebhookAck(processed=False, reason="processing_error").model_dump(exclude_none=True)
        return {"received": True, "processed": True, **result.model_dump()}

    background_tasks.add_task(run_order_fulfillment, order)
    logger.info(f"Order {order.order_number}: queued {len(cards)} card item(s)")
    return WebhookAck(queued=len(cards)).model_dump(exclude_none=True)
