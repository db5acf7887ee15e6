"""
Order fulfillment pipeline for card line items.

For every card line item in an order:

  design path    the item carries a pre-rendered design URL; the URL is sent
                 to the customer as-is.
  composed path  the item carries the template / product / inside image trio;
                 images are fetched and validated, the two-page PDF is
                 composed, uploaded to storage and the signed URL is sent.

Line items are processed concurrently and independently: one item's failure
is logged and recorded on its LineItemOutcome, and never stops its siblings.
When at least one item produced a URL, the customer gets a single email
listing those items only.

Environment variables
---------------------
CARD_VALIDATE_IMAGES         "true"/"false" (default: true)
CARD_PROPERTY_NAMES          "current"/"legacy" (default: current)
CARD_FETCH_TIMEOUT_SECONDS   per-image fetch deadline (default: 15)
CARD_STORAGE_FOLDER          folder for composed PDFs (default: cards)
CUSTOM_CARD_VARIANT_IDS      comma-separated variant ids sold as
                             pre-designed custom cards
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Optional

import httpx

from app.models.card import CardRequest
from app.models.order import FulfillmentResult, LineItem, LineItemOutcome, Order
from app.services.card_composer import (
    ComposeError,
    InvalidInputError,
    compose,
    unsupported_message_characters,
)
from app.services.card_request import (
    PropertyNames,
    extract_card_request,
    extract_design_url,
    get_property_names,
    has_card_properties,
    properties_to_mapping,
)
from app.services.image_fetcher import DEFAULT_FETCH_TIMEOUT, FetchError, fetch_card_images
from app.services.notifier import NotifyError, build_subject, send_download_email
from app.services.storage import StoreError, generate_name_hint, store_document

logger = logging.getLogger(__name__)

DEFAULT_CUSTOM_CARD_VARIANT_IDS = frozenset({"46650379796721"})


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PipelineConfig:
    validate_images: bool = True
    property_names: str = "current"
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    storage_folder: str = "cards"
    custom_card_variant_ids: frozenset[str] = field(
        default_factory=lambda: DEFAULT_CUSTOM_CARD_VARIANT_IDS
    )

    @property
    def names(self) -> PropertyNames:
        return get_property_names(self.property_names)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    logger.warning(f"Invalid boolean for {name}: {raw!r}, using {default}")
    return default


def load_pipeline_config() -> PipelineConfig:
    """Build the pipeline configuration from environment variables."""
    property_names = os.getenv("CARD_PROPERTY_NAMES", "current").strip().lower() or "current"
    try:
        get_property_names(property_names)
    except ValueError as e:
        logger.warning(f"{e}; using 'current'")
        property_names = "current"

    timeout_raw = os.getenv("CARD_FETCH_TIMEOUT_SECONDS", "").strip()
    fetch_timeout = DEFAULT_FETCH_TIMEOUT
    if timeout_raw:
        try:
            fetch_timeout = float(timeout_raw)
        except ValueError:
            logger.warning(f"Invalid CARD_FETCH_TIMEOUT_SECONDS {timeout_raw!r}, using {DEFAULT_FETCH_TIMEOUT}")
        if fetch_timeout <= 0:
            fetch_timeout = DEFAULT_FETCH_TIMEOUT

    variants_raw = os.getenv("CUSTOM_CARD_VARIANT_IDS", "").strip()
    variant_ids = (
        frozenset(v.strip() for v in variants_raw.split(",") if v.strip())
        if variants_raw
        else DEFAULT_CUSTOM_CARD_VARIANT_IDS
    )

    return PipelineConfig(
        validate_images=_env_bool("CARD_VALIDATE_IMAGES", True),
        property_names=property_names,
        fetch_timeout=fetch_timeout,
        storage_folder=os.getenv("CARD_STORAGE_FOLDER", "cards").strip() or "cards",
        custom_card_variant_ids=variant_ids,
    )


# ---------------------------------------------------------------------------
# Line item classification
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CardItem:
    """A line item that is a card, with its resolved path and properties."""

    item: LineItem
    path: str                       # "design" or "composed"
    properties: dict[str, str]


def select_card_items(order: Order, config: PipelineConfig) -> list[CardItem]:
    """
    Pick the card line items out of an order and decide their path.

    Rules, in order:
      1. A design URL property → design path (wins over the image trio).
      2. A custom-card variant without a design URL → design path; it is
         reported as skipped later.
      3. Any image-trio property → composed path.
      4. Anything else is not a card and is left out.
    """
    names = config.names
    selected: list[CardItem] = []

    for item in order.line_items:
        mapping = properties_to_mapping(item.properties)
        design_url = extract_design_url(mapping, names)
        has_trio = has_card_properties(mapping, names)
        is_custom_variant = (
            item.variant_id is not None
            and str(item.variant_id) in config.custom_card_variant_ids
        )

        if design_url:
            if has_trio:
                logger.warning(
                    f"Order {order.order_number}: line item {item.title!r} has both a "
                    "design URL and card images; using the design URL"
                )
            selected.append(CardItem(item=item, path="design", properties=mapping))
        elif is_custom_variant:
            selected.append(CardItem(item=item, path="design", properties=mapping))
        elif has_trio:
            selected.append(CardItem(item=item, path="composed", properties=mapping))

    return selected


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------

async def render_card(
    request: CardRequest,
    config: PipelineConfig,
    client: Optional[httpx.AsyncClient] = None,
) -> bytes:
    """
    Fetch the three images and compose the card PDF.

    Raises:
        InvalidInputError:    an image could not be fetched or validated.
        EncodingFailureError: PDF serialization failed.
    """
    try:
        images = await fetch_card_images(
            request,
            client=client,
            timeout=config.fetch_timeout,
            validate=config.validate_images,
        )
    except FetchError as e:
        raise InvalidInputError(f"{e.slot or 'unknown'} image unusable: {e}") from e

    return await asyncio.to_thread(compose, request, images)


async def _fulfill_composed(
    order: Order,
    card: CardItem,
    config: PipelineConfig,
    client: Optional[httpx.AsyncClient],
) -> LineItemOutcome:
    item = card.item
    extraction = extract_card_request(card.properties, config.names)
    if not extraction.is_complete:
        logger.warning(
            f"Order {order.order_number}: line item {item.title!r} is missing "
            f"card images ({', '.join(extraction.missing)}); not composing"
        )
        return LineItemOutcome(
            title=item.title,
            quantity=item.quantity,
            path="composed",
            status="skipped",
            reason=f"missing_images: {', '.join(extraction.missing)}",
        )

    unsupported = unsupported_message_characters(extraction.request)
    if unsupported:
        logger.warning(
            f"Order {order.order_number}: message for {item.title!r} has characters "
            f"the card font cannot draw: {unsupported!r}"
        )

    pdf_bytes = await render_card(extraction.request, config, client)
    url = await asyncio.to_thread(
        store_document,
        pdf_bytes,
        folder=config.storage_folder,
        name_hint=generate_name_hint(),
        resource_kind="raw",
        suggested_format="pdf",
    )
    logger.info(f"Order {order.order_number}: composed card for {item.title!r}")
    return LineItemOutcome(
        title=item.title,
        quantity=item.quantity,
        path="composed",
        status="ready",
        download_url=url,
    )


async def fulfill_line_item(
    order: Order,
    card: CardItem,
    config: PipelineConfig,
    client: Optional[httpx.AsyncClient] = None,
) -> LineItemOutcome:
    """
    Produce the download URL for one card line item.

    Never raises: every failure is logged with the order number, line item
    title and (for image failures) the failing image, and returned as a
    failed or skipped outcome.
    """
    item = card.item

    if card.path == "design":
        url = extract_design_url(card.properties, config.names)
        if not url:
            logger.info(
                f"Order {order.order_number}: custom card {item.title!r} has no design URL"
            )
            return LineItemOutcome(
                title=item.title, quantity=item.quantity, path="design",
                status="skipped", reason="missing_design_url",
            )
        return LineItemOutcome(
            title=item.title, quantity=item.quantity, path="design",
            status="ready", download_url=url,
        )

    try:
        return await _fulfill_composed(order, card, config, client)
    except ComposeError as e:
        cause = e.__cause__
        slot = getattr(cause, "slot", None)
        logger.error(
            f"Order {order.order_number}: composing {item.title!r} failed "
            f"({e.reason}{', image=' + slot if slot else ''}): {e}"
        )
        reason = e.reason
        if isinstance(cause, FetchError):
            reason = f"{e.reason}: {slot} {cause.reason}"
        return LineItemOutcome(
            title=item.title, quantity=item.quantity, path="composed",
            status="failed", reason=reason,
        )
    except StoreError as e:
        logger.error(f"Order {order.order_number}: storing {item.title!r} failed: {e}")
        return LineItemOutcome(
            title=item.title, quantity=item.quantity, path="composed",
            status="failed", reason="store_failed",
        )
    except Exception as e:
        logger.exception(f"Order {order.order_number}: unexpected error for {item.title!r}: {e}")
        return LineItemOutcome(
            title=item.title, quantity=item.quantity, path="composed",
            status="failed", reason="unexpected_error",
        )


# ---------------------------------------------------------------------------
# Order processing
# ---------------------------------------------------------------------------

async def process_order(
    order: Order,
    config: Optional[PipelineConfig] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> FulfillmentResult:
    """
    Fulfill every card line item of `order` and email the customer.

    Returns a FulfillmentResult describing each card item and whether the
    email went out. Email failures are recorded, not raised.
    """
    config = config or load_pipeline_config()

    if client is None:
        async with httpx.AsyncClient() as own_client:
            return await process_order(order, config, own_client)

    cards = select_card_items(order, config)
    result = FulfillmentResult(order_number=order.order_number)

    if not cards:
        logger.info(f"Order {order.order_number} contains no card line items")
        return result

    outcomes = await asyncio.gather(
        *(fulfill_line_item(order, card, config, client) for card in cards)
    )
    result.items = list(outcomes)

    links = result.download_links
    if not links:
        logger.info(f"Order {order.order_number} has card items but no download URLs")
        return result

    if not order.email:
        logger.warning(f"Order {order.order_number} has no customer email; not notifying")
        result.email_error = "missing_recipient"
        return result

    try:
        await send_download_email(
            order.email,
            build_subject(order.order_number),
            links,
            customer_name=order.customer_name,
            order_number=order.order_number,
            client=client,
        )
        result.email_sent = True
        logger.info(
            f"Sent card email for order {order.order_number} ({len(links)} item(s))"
        )
    except NotifyError as e:
        logger.error(f"Failed to send card email for order {order.order_number}: {e}")
        result.email_error = str(e)

    return result


async def run_order_fulfillment(order: Order) -> None:
    """
    Background-task entry point used by the orders webhook.

    The webhook has already been acknowledged when this runs, so failures are
    only reported through the log.
    """
    try:
        result = await process_order(order)
    except Exception:
        logger.exception(f"Fulfillment of order {order.order_number} crashed")
        return

    failed = [i for i in result.items if i.status == "failed"]
    if failed:
        logger.error(
            f"Order {order.order_number}: {len(failed)} of {len(result.items)} "
            "card item(s) failed"
        )
