"""
Line-item property extraction.

Turns the list of Shopify line-item properties into a typed CardRequest (or a
design URL) using one canonical set of property names.

Two naming sets exist in stored order data:

  current   URL-bearing properties are underscore-prefixed ("_Product Image"),
            which Shopify hides from the storefront cart and checkout.
  legacy    Older storefront revisions sent the same properties unprefixed
            ("Product Image").

Exactly one set is active at a time (CARD_PROPERTY_NAMES, default "current").
Properties that only match the inactive set are logged and ignored rather
than being picked up through a fallback lookup.

Adding a naming set:
  1. Define a PropertyNames instance.
  2. Register it in _NAMING_SETS.
"""

import logging
from dataclasses import dataclass, fields
from typing import Iterable, Optional

from app.models.card import CardRequest
from app.models.order import LineItemProperty

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PropertyNames:
    message: str
    font: str
    color: str
    size: str
    product_image: str
    template_image: str
    inside_template: str
    design_url: str


CURRENT_NAMES = PropertyNames(
    message="Custom Message",
    font="Font",
    color="Color",
    size="Size",
    product_image="_Product Image",
    template_image="_Template Image",
    inside_template="_Inside Template",
    design_url="_Design URL",
)

LEGACY_NAMES = PropertyNames(
    message="Custom Message",
    font="Font",
    color="Color",
    size="Size",
    product_image="Product Image",
    template_image="Template Image",
    inside_template="Inside Template",
    design_url="Design URL",
)

_NAMING_SETS: dict[str, PropertyNames] = {
    "current": CURRENT_NAMES,
    "legacy": LEGACY_NAMES,
}

# Image fields in the order they are reported when missing
_IMAGE_FIELDS = ("product_image", "template_image", "inside_template")


def get_property_names(name: str) -> PropertyNames:
    """
    Return the naming set registered under `name`.

    Raises ValueError for unknown names.
    """
    resolved = (name or "").lower().strip()
    names = _NAMING_SETS.get(resolved)
    if names is None:
        raise ValueError(
            f"Unknown property naming set {name!r}. "
            f"Supported: {sorted(_NAMING_SETS)}"
        )
    return names


def properties_to_mapping(properties: Iterable[LineItemProperty]) -> dict[str, str]:
    """
    Collapse Shopify's [{name, value}] list into a name -> value mapping.

    Values are stringified and stripped; blank values are dropped. When a name
    repeats, the last occurrence wins.
    """
    mapping: dict[str, str] = {}
    for prop in properties:
        if prop.value is None:
            continue
        value = str(prop.value).strip()
        if value:
            mapping[prop.name] = value
    return mapping


def _warn_on_foreign_names(mapping: dict[str, str], names: PropertyNames) -> None:
    """Log properties that belong to another naming set and are being ignored."""
    active = {getattr(names, f.name) for f in fields(PropertyNames)}
    for other in _NAMING_SETS.values():
        if other is names:
            continue
        for f in fields(PropertyNames):
            foreign = getattr(other, f.name)
            if foreign in mapping and foreign not in active:
                logger.warning(
                    f"Ignoring property {foreign!r}: not part of the active naming set "
                    f"(expected {getattr(names, f.name)!r})"
                )


@dataclass(frozen=True)
class CardRequestExtraction:
    """Either a CardRequest or the list of image fields that were missing."""

    request: Optional[CardRequest]
    missing: tuple[str, ...] = ()

    @property
    def is_complete(self) -> bool:
        return self.request is not None


def has_card_properties(mapping: dict[str, str], names: PropertyNames) -> bool:
    """True when any of the three image-reference properties is present."""
    return any(getattr(names, f) in mapping for f in _IMAGE_FIELDS)


def extract_design_url(mapping: dict[str, str], names: PropertyNames) -> Optional[str]:
    """Return the pre-rendered design URL, or None when absent."""
    return mapping.get(names.design_url)


def extract_card_request(
    mapping: dict[str, str],
    names: PropertyNames,
) -> CardRequestExtraction:
    """
    Build a CardRequest from a property mapping.

    Font, color and size are passed through raw (None when absent); the
    composer applies defaults and clamps malformed values. The three image
    references are mandatory: if any is missing, no CardRequest is built and
    the missing field names are returned instead.
    """
    _warn_on_foreign_names(mapping, names)

    missing = tuple(f for f in _IMAGE_FIELDS if getattr(names, f) not in mapping)
    if missing:
        return CardRequestExtraction(request=None, missing=missing)

    request = CardRequest(
        message=mapping.get(names.message, ""),
        font=mapping.get(names.font),
        color=mapping.get(names.color),
        size=mapping.get(names.size),
        product_image_ref=mapping[names.product_image],
        template_image_ref=mapping[names.template_image],
        inside_template_ref=mapping[names.inside_template],
    )
    return CardRequestExtraction(request=request)
