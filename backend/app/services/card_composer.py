"""
Card document composer.

Lays out the fixed two-page printable card and serializes it to PDF with
reportlab.

  Page 1 (front)   template image full bleed, product image rotated 270°
  Page 2 (inside)  inside-template image full bleed, customer message
                   wrapped to 3.6" and rotated 270°

The numeric placements below match what existing printed cards were produced
with and must not be changed.

Public API:
  parse_size(value) -> int
  resolve_color(value) -> str
  resolve_font(name) -> str
  unsupported_characters(text, font_name) -> str
  build_layout(request: CardRequest) -> ComposedDocument
  unsupported_message_characters(request: CardRequest) -> str
  render_pdf(document: ComposedDocument, images: CardImages) -> bytes
  compose(request: CardRequest, images: CardImages) -> bytes
"""

import io
import logging
import os
import re
from pathlib import Path
from typing import Optional

from reportlab.lib.colors import HexColor
from reportlab.lib.pagesizes import letter
from reportlab.lib.units import inch
from reportlab.lib.utils import ImageReader, simpleSplit
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.pdfgen.canvas import Canvas

from app.models.card import (
    CardImages,
    CardRequest,
    ComposedDocument,
    ImagePlacement,
    PageLayout,
    TextPlacement,
)
from app.services.image_fetcher import PNG_SIGNATURE

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Layout constants (inches, top-left origin)
# ---------------------------------------------------------------------------

PAGE_WIDTH = 8.5
PAGE_HEIGHT = 11.0

PRODUCT_X = 0.24
PRODUCT_Y = -3.75
PRODUCT_SIZE = 4.0
PRODUCT_ROTATION = 270

TEXT_X = 3.64
TEXT_Y = 0.47
TEXT_MAX_WIDTH = 3.6
TEXT_ROTATION = 270

DEFAULT_FONT = "helvetica"
# <CARD_FONT_DIR>/unicode.ttf unless CARD_UNICODE_FONT names another file
DEFAULT_UNICODE_FONT = "unicode"
DEFAULT_COLOR = "#000000"
DEFAULT_SIZE = 20
MAX_SIZE = 200

# Line height as a multiple of the font size
LINE_HEIGHT_FACTOR = 1.15

# Requested family (lowercase) -> built-in PDF font
_FONT_ALIASES: dict[str, str] = {
    "helvetica": "Helvetica",
    "arial": "Helvetica",
    "sans-serif": "Helvetica",
    "sans serif": "Helvetica",
    "times": "Times-Roman",
    "times new roman": "Times-Roman",
    "times-roman": "Times-Roman",
    "serif": "Times-Roman",
    "courier": "Courier",
    "courier new": "Courier",
    "monospace": "Courier",
}

_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*[a-zA-Z%]*\s*$")
_HEX_COLOR_PATTERN = re.compile(r"^#?([0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ComposeError(Exception):
    """Base class for composition failures."""

    reason = "compose_failed"


class InvalidInputError(ComposeError):
    """One or more source images are missing or failed validation."""

    reason = "invalid_input"


class EncodingFailureError(ComposeError):
    """PDF serialization failed. Not retried within the same call."""

    reason = "encoding_failure"


# ---------------------------------------------------------------------------
# Parameter normalisation
# ---------------------------------------------------------------------------

def parse_size(value: Optional[str]) -> int:
    """
    Parse a text size such as "34px" into integer points.

    A trailing unit suffix is stripped and decimals are truncated. Absent,
    unparsable or non-positive values give DEFAULT_SIZE; values above
    MAX_SIZE are clamped. Never raises.
    """
    if value is None:
        return DEFAULT_SIZE
    m = _SIZE_PATTERN.match(str(value))
    if not m:
        return DEFAULT_SIZE
    size = int(float(m.group(1)))
    if size <= 0:
        return DEFAULT_SIZE
    return min(size, MAX_SIZE)


def resolve_color(value: Optional[str]) -> str:
    """Normalise a hex colour to "#rrggbb"; anything malformed gives black."""
    if not value:
        return DEFAULT_COLOR
    m = _HEX_COLOR_PATTERN.match(value.strip())
    if not m:
        logger.warning(f"Unrecognised text color {value!r}, using {DEFAULT_COLOR}")
        return DEFAULT_COLOR
    digits = m.group(1).lower()
    if len(digits) == 3:
        digits = "".join(ch * 2 for ch in digits)
    return f"#{digits}"


def _register_font_file(key: str) -> Optional[str]:
    """
    Register <CARD_FONT_DIR>/<key>.ttf under `key` if it exists.

    Keys come from customer input, so anything that could leave the font
    directory is refused. Returns the registered font name, or None when no
    file is available.
    """
    font_dir = os.getenv("CARD_FONT_DIR", "").strip()
    if not font_dir:
        return None
    if not key or "/" in key or "\\" in key or ".." in key or "\x00" in key:
        logger.warning(f"Refusing font name {key!r}")
        return None
    if key in pdfmetrics.getRegisteredFontNames():
        return key

    base = Path(font_dir).resolve()
    font_path = (base / f"{key}.ttf").resolve()
    if font_path.parent != base or not font_path.is_file():
        return None
    try:
        pdfmetrics.registerFont(TTFont(key, str(font_path)))
    except Exception as e:
        logger.warning(f"Failed to register font {font_path}: {e}")
        return None
    logger.info(f"Registered card font {key!r} from {font_path}")
    return key


def resolve_font(name: Optional[str]) -> str:
    """
    Map a requested font family to a font name reportlab can draw with.

    Lookup order: built-in aliases, standard PDF font names, then
    <CARD_FONT_DIR>/<name>.ttf. Unknown names fall back to Helvetica.
    """
    key = " ".join((name or DEFAULT_FONT).lower().split())
    if not key:
        key = DEFAULT_FONT

    if key in _FONT_ALIASES:
        return _FONT_ALIASES[key]

    for standard in pdfmetrics.standardFonts:
        if standard.lower() == key:
            return standard

    registered = _register_font_file(key)
    if registered:
        return registered

    logger.warning(f"Unknown font {name!r}, falling back to Helvetica")
    return _FONT_ALIASES[DEFAULT_FONT]


def unsupported_characters(text: str, font_name: str) -> str:
    """
    Return the distinct characters of `text` that `font_name` cannot draw.

    Standard PDF fonts are limited to WinAnsi (cp1252); embedded TrueType
    fonts are checked against their character map. Whitespace is ignored.
    """
    font = pdfmetrics.getFont(font_name)
    char_map = getattr(getattr(font, "face", None), "charToGlyph", None)

    missing: list[str] = []
    for ch in text:
        if ch.isspace() or ch in missing:
            continue
        if char_map is not None:
            supported = ord(ch) in char_map
        else:
            try:
                ch.encode("cp1252")
                supported = True
            except UnicodeEncodeError:
                supported = False
        if not supported:
            missing.append(ch)
    return "".join(missing)


def _unicode_fallback_font() -> Optional[str]:
    """Register <CARD_FONT_DIR>/<CARD_UNICODE_FONT>.ttf, default "unicode"."""
    key = os.getenv("CARD_UNICODE_FONT", "").strip().lower() or DEFAULT_UNICODE_FONT
    return _register_font_file(key)


def _font_for_message(message: str, font_name: str) -> str:
    """
    Keep `font_name` unless it cannot draw `message` and the Unicode
    fallback font can.
    """
    if not unsupported_characters(message, font_name):
        return font_name
    fallback = _unicode_fallback_font()
    if fallback and not unsupported_characters(message, fallback):
        return fallback
    return font_name


# ---------------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------------

def build_layout(request: CardRequest) -> ComposedDocument:
    """Return the two-page layout for `request`. Pure and deterministic."""
    front = PageLayout(
        width=PAGE_WIDTH,
        height=PAGE_HEIGHT,
        images=(
            ImagePlacement(
                slot="template", x=0, y=0,
                width=PAGE_WIDTH, height=PAGE_HEIGHT, rotation=0,
            ),
            ImagePlacement(
                slot="product", x=PRODUCT_X, y=PRODUCT_Y,
                width=PRODUCT_SIZE, height=PRODUCT_SIZE, rotation=PRODUCT_ROTATION,
            ),
        ),
    )

    inside = PageLayout(
        width=PAGE_WIDTH,
        height=PAGE_HEIGHT,
        images=(
            ImagePlacement(
                slot="inside", x=0, y=0,
                width=PAGE_WIDTH, height=PAGE_HEIGHT, rotation=0,
            ),
        ),
        texts=(
            TextPlacement(
                content=request.message,
                font=_font_for_message(request.message, resolve_font(request.font)),
                size=parse_size(request.size),
                color=resolve_color(request.color),
                x=TEXT_X,
                y=TEXT_Y,
                max_width=TEXT_MAX_WIDTH,
                rotation=TEXT_ROTATION,
            ),
        ),
    )

    return ComposedDocument(front=front, inside=inside)


def unsupported_message_characters(request: CardRequest) -> str:
    """Characters of the message that the font chosen for it cannot draw."""
    return "".join(
        unsupported_characters(text.content, text.font)
        for text in build_layout(request).inside.texts
    )


# ---------------------------------------------------------------------------
# PDF serialization
# ---------------------------------------------------------------------------

def _draw_image(canvas: Canvas, page: PageLayout, placement: ImagePlacement, data: bytes) -> None:
    # Bottom-left of the unrotated box, in PDF points (bottom-left origin)
    x_pt = placement.x * inch
    y_pt = (page.height - placement.y - placement.height) * inch

    canvas.saveState()
    canvas.translate(x_pt, y_pt)
    if placement.rotation:
        canvas.rotate(placement.rotation)
    canvas.drawImage(
        ImageReader(io.BytesIO(data)),
        0,
        0,
        width=placement.width * inch,
        height=placement.height * inch,
        mask="auto",
    )
    canvas.restoreState()


def _draw_text(canvas: Canvas, page: PageLayout, placement: TextPlacement) -> None:
    lines = simpleSplit(
        placement.content, placement.font, placement.size, placement.max_width * inch
    )
    if not lines:
        return

    leading = placement.size * LINE_HEIGHT_FACTOR

    canvas.saveState()
    canvas.translate(placement.x * inch, (page.height - placement.y) * inch)
    if placement.rotation:
        canvas.rotate(placement.rotation)
    canvas.setFillColor(HexColor(placement.color))
    canvas.setFont(placement.font, placement.size)
    for i, line in enumerate(lines):
        canvas.drawString(0, -i * leading, line)
    canvas.restoreState()


def render_pdf(document: ComposedDocument, images: CardImages) -> bytes:
    """
    Serialize `document` to PDF bytes.

    Exactly two pages are written. The canvas is created in invariant mode so
    identical inputs give identical bytes.
    """
    buf = io.BytesIO()
    canvas = Canvas(buf, pagesize=letter, invariant=True)
    canvas.setTitle("Custom Card")

    for page in document.pages:
        for placement in page.images:
            image = getattr(images, placement.slot)
            _draw_image(canvas, page, placement, image.data)
        for placement in page.texts:
            _draw_text(canvas, page, placement)
        canvas.showPage()

    canvas.save()
    buf.seek(0)
    return buf.read()


def _check_images(images: Optional[CardImages]) -> None:
    if images is None:
        raise InvalidInputError("Card images are missing")
    for slot in ("template", "product", "inside"):
        image = getattr(images, slot, None)
        if image is None or not image.data:
            raise InvalidInputError(f"The {slot} image is missing or empty")
        if image.format == "png" and not image.data.startswith(PNG_SIGNATURE):
            raise InvalidInputError(f"The {slot} image is not a valid PNG")


def compose(request: CardRequest, images: CardImages) -> bytes:
    """
    Compose the two-page card PDF for `request`.

    Raises:
        InvalidInputError:    an image is missing or invalid; nothing is drawn.
        EncodingFailureError: reportlab failed while laying out or writing.
    """
    _check_images(images)

    document = build_layout(request)
    try:
        return render_pdf(document, images)
    except Exception as e:
        logger.error(f"Card PDF serialization failed: {e}")
        raise EncodingFailureError(f"Failed to render card PDF: {e}") from e
