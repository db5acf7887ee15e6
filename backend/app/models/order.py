"""
Pydantic models for the Shopify order webhook and fulfillment results.

Shopify sends many more fields than these; only what the card fulfillment
flow reads is modelled, and unknown fields are ignored.

Models:
  LineItemProperty   one {name, value} customization property
  LineItem           one purchasable entry in the order
  Order              the orders/paid webhook body
  DownloadLink       one row in the customer email
  LineItemOutcome    what happened to a single card line item
  FulfillmentResult  summary of one order's processing
  WebhookAck         the acknowledgement returned to Shopify
"""

from typing import Literal, Optional, Union

from pydantic import BaseModel, Field


class LineItemProperty(BaseModel):
    model_config = {"extra": "ignore"}

    name: str
    value: Optional[Union[str, int, float]] = None


class LineItem(BaseModel):
    model_config = {"extra": "ignore"}

    id: Optional[int] = None
    variant_id: Optional[Union[int, str]] = None
    title: str = ""
    quantity: int = 1
    properties: list[LineItemProperty] = Field(default_factory=list)


class BillingAddress(BaseModel):
    model_config = {"extra": "ignore"}

    first_name: Optional[str] = None


class Order(BaseModel):
    """Subset of Shopify's order payload consumed by card fulfillment."""

    model_config = {"extra": "ignore"}

    id: Optional[int] = None
    order_number: Optional[Union[int, str]] = None
    email: Optional[str] = None
    billing_address: Optional[BillingAddress] = None
    line_items: list[LineItem] = Field(default_factory=list)

    @property
    def customer_name(self) -> str:
        if self.billing_address and self.billing_address.first_name:
            return self.billing_address.first_name
        return "Customer"


class DownloadLink(BaseModel):
    title: str
    quantity: int
    download_url: str


class LineItemOutcome(BaseModel):
    title: str
    quantity: int
    path: Literal["design", "composed"]
    status: Literal["ready", "skipped", "failed"]
    download_url: Optional[str] = None
    reason: Optional[str] = None


class FulfillmentResult(BaseModel):
    order_number: Optional[Union[int, str]] = None
    items: list[LineItemOutcome] = Field(default_factory=list)
    email_sent: bool = False
    email_error: Optional[str] = None

    @property
    def download_links(self) -> list[DownloadLink]:
        """Links for items that produced a URL, in line-item order."""
        return [
            DownloadLink(
                title=item.title,
                quantity=item.quantity,
                download_url=item.download_url,
            )
            for item in self.items
            if item.status == "ready" and item.download_url
        ]


class WebhookAck(BaseModel):
    received: bool = True
    processed: Optional[bool] = None
    queued: Optional[int] = None
    reason: Optional[str] = None
