"""
Pydantic models for card composition.

Models:
  CardRequest       typed customization data for one line item
  FetchedImage      a downloaded (and normally validated) source image
  CardImages        the template / product / inside image trio
  ImagePlacement    one image drawn on a page
  TextPlacement     one block of wrapped text drawn on a page
  PageLayout        a single 8.5 x 11 inch page
  ComposedDocument  the fixed two-page card layout

Layout coordinates are inches measured from the top-left corner of the page.
Rotation is in counter-clockwise degrees; images rotate about the bottom-left
corner of their unrotated box, text rotates about its first baseline origin.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict

ImageSlot = Literal["template", "product", "inside"]


class CardRequest(BaseModel):
    """Customization parameters for one card, built once per line item."""

    model_config = ConfigDict(frozen=True)

    message: str = ""
    font: Optional[str] = None
    color: Optional[str] = None
    size: Optional[str] = None      # raw value, e.g. "34px"
    product_image_ref: str
    template_image_ref: str
    inside_template_ref: str

    def image_refs(self) -> dict[str, str]:
        """Return the three image URLs keyed by slot."""
        return {
            "template": self.template_image_ref,
            "product": self.product_image_ref,
            "inside": self.inside_template_ref,
        }


class FetchedImage(BaseModel):
    """Raw image bytes as downloaded; `format` is "png" once validated."""

    model_config = ConfigDict(frozen=True)

    url: str
    data: bytes
    format: str


class CardImages(BaseModel):
    model_config = ConfigDict(frozen=True)

    template: FetchedImage
    product: FetchedImage
    inside: FetchedImage


class ImagePlacement(BaseModel):
    model_config = ConfigDict(frozen=True)

    slot: ImageSlot
    x: float
    y: float
    width: float
    height: float
    rotation: float = 0


class TextPlacement(BaseModel):
    model_config = ConfigDict(frozen=True)

    content: str
    font: str
    size: int
    color: str
    x: float
    y: float
    max_width: float
    rotation: float = 0


class PageLayout(BaseModel):
    model_config = ConfigDict(frozen=True)

    width: float = 8.5
    height: float = 11
    images: tuple[ImagePlacement, ...] = ()
    texts: tuple[TextPlacement, ...] = ()


class ComposedDocument(BaseModel):
    """Exactly two pages: the front and the inside of the card."""

    model_config = ConfigDict(frozen=True)

    front: PageLayout
    inside: PageLayout

    @property
    def pages(self) -> tuple[PageLayout, PageLayout]:
        return (self.front, self.inside)
