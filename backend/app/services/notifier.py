"""
Customer notification service.

Sends the "your cards are ready" email with one download link per card line
item, through Resend's HTTP API.

Environment variables
---------------------
RESEND_API_KEY       API key (required to send).
RESEND_API_URL       Endpoint override (default: https://api.resend.com/emails).
CARD_EMAIL_FROM      Sender address (default: orders@update.cardaverse.ai).
CARD_SUPPORT_EMAIL   Support address shown in the email footer.

Public API:
  build_subject(order_number) -> str
  build_email_bodies(links, *, customer_name, order_number) -> tuple[str, str]
  send_download_email(recipient, subject, links, ...) -> str
"""

import html
import logging
import os
from typing import Optional, Sequence

import httpx

from app.models.order import DownloadLink

logger = logging.getLogger(__name__)

DEFAULT_RESEND_API_URL = "https://api.resend.com/emails"
DEFAULT_FROM = "orders@update.cardaverse.ai"
DEFAULT_SUPPORT_EMAIL = "support@cardaverse.ai"

_BRAND_COLOR = "rgb(101, 116, 74)"
_SEND_TIMEOUT = 10.0


class NotifyError(Exception):
    """The email could not be sent."""


def build_subject(order_number) -> str:
    return f"Your Custom Cards Are Ready - Order #{order_number}"


def _link_block_html(link: DownloadLink) -> str:
    title = html.escape(link.title)
    url = html.escape(link.download_url, quote=True)
    return f"""
    <div style="margin-bottom: 20px; padding: 15px; border: 1px solid #e0e0e0; border-radius: 8px;">
      <h3 style="margin: 0 0 10px 0; color: #333;">{title}</h3>
      <p style="margin: 0 0 10px 0; color: #666;">Quantity: {link.quantity}</p>
      <a href="{url}"
         style="display: inline-block; padding: 10px 20px; background-color: {_BRAND_COLOR};
                color: white; text-decoration: none; border-radius: 5px; font-weight: bold;"
         target="_blank">
        Download Your Custom Card
      </a>
    </div>"""


def build_email_bodies(
    links: Sequence[DownloadLink],
    *,
    customer_name: str,
    order_number,
    support_email: Optional[str] = None,
) -> tuple[str, str]:
    """
    Render the HTML and plain-text bodies of the download email.

    Returns:
        (html_body, text_body)
    """
    support = support_email or os.getenv("CARD_SUPPORT_EMAIL", DEFAULT_SUPPORT_EMAIL)
    name = html.escape(customer_name)
    number = html.escape(str(order_number))
    links_html = "".join(_link_block_html(link) for link in links)

    html_body = f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
      <div style="text-align: center; margin-bottom: 30px;">
        <h1 style="color: {_BRAND_COLOR}; margin-bottom: 10px;">Your Custom Cards Are Ready!</h1>
        <p style="color: #666; font-size: 16px;">Order #{number}</p>
      </div>

      <div style="margin-bottom: 30px;">
        <p style="font-size: 16px; line-height: 1.6;">Hi {name},</p>
        <p style="font-size: 16px; line-height: 1.6;">
          Thank you for your order! Your custom cards have been processed and are ready for download.
          Please use the links below to download your personalized cards.
        </p>
      </div>

      <div style="margin-bottom: 30px;">
        <h2 style="color: #333; margin-bottom: 20px;">Your Downloads:</h2>
        {links_html}
      </div>

      <div style="margin-bottom: 30px; padding: 20px; background-color: #f9f9f9; border-radius: 8px;">
        <h3 style="color: #333; margin-bottom: 10px;">Important Notes:</h3>
        <ul style="color: #666; line-height: 1.6;">
          <li>Download links are valid for 30 days from the order date</li>
          <li>Files are high-resolution PDFs ready for printing</li>
          <li>If you have any issues downloading, please contact our support team</li>
        </ul>
      </div>

      <div style="text-align: center; margin-top: 40px; padding-top: 20px; border-top: 1px solid #e0e0e0;">
        <p style="color: #666; margin-bottom: 10px;">Need help? Contact us:</p>
        <p style="color: {_BRAND_COLOR}; font-weight: bold;">{html.escape(support)}</p>
      </div>
    </div>
    """

    link_lines = "\n".join(
        f"{link.title} (Quantity: {link.quantity})\nDownload: {link.download_url}\n"
        for link in links
    )
    text_body = (
        f"Hi {customer_name},\n\n"
        f"Thank you for your order #{order_number}! Your custom cards have been "
        "processed and are ready for download.\n\n"
        "Your Download Links:\n\n"
        f"{link_lines}\n"
        "Important Notes:\n"
        "- Download links are valid for 30 days from the order date\n"
        "- Files are high-resolution PDFs ready for printing\n"
        "- If you have any issues downloading, please contact our support team\n\n"
        f"Need help? Contact us at {support}\n\n"
        "Best regards,\n"
        "Your Team\n"
    )
    return html_body, text_body


async def send_download_email(
    recipient: str,
    subject: str,
    links: Sequence[DownloadLink],
    *,
    customer_name: str = "Customer",
    order_number=None,
    client: Optional[httpx.AsyncClient] = None,
) -> str:
    """
    Send the download-links email through Resend.

    Only links that actually resolved should be passed in; an empty list is
    rejected so that customers never receive an email with nothing in it.

    Returns:
        The Resend message id (empty string if the API did not return one).

    Raises:
        ValueError:  no links, or no recipient.
        NotifyError: API key missing, transport failure or non-2xx response.
    """
    if not links:
        raise ValueError("At least one download link is required")
    if not recipient:
        raise ValueError("A recipient address is required")

    api_key = os.getenv("RESEND_API_KEY", "").strip()
    if not api_key:
        raise NotifyError("RESEND_API_KEY is not configured")

    html_body, text_body = build_email_bodies(
        links, customer_name=customer_name, order_number=order_number
    )
    payload = {
        "from": os.getenv("CARD_EMAIL_FROM", DEFAULT_FROM),
        "to": [recipient],
        "subject": subject,
        "html": html_body,
        "text": text_body,
    }
    url = os.getenv("RESEND_API_URL", DEFAULT_RESEND_API_URL)
    headers = {"Authorization": f"Bearer {api_key}"}

    if client is None:
        async with httpx.AsyncClient(timeout=_SEND_TIMEOUT) as own_client:
            return await _post_email(own_client, url, payload, headers)
    return await _post_email(client, url, payload, headers)


async def _post_email(
    client: httpx.AsyncClient,
    url: str,
    payload: dict,
    headers: dict,
) -> str:
    try:
        response = await client.post(url, json=payload, headers=headers)
    except httpx.HTTPError as e:
        raise NotifyError(f"Failed to reach email provider: {e}") from e

    if not response.is_success:
        raise NotifyError(
            f"Email provider returned HTTP {response.status_code}: {response.text[:200]}"
        )

    try:
        body = response.json()
    except ValueError:
        body = {}
    message_id = body.get("id", "") if isinstance(body, dict) else ""
    logger.info(f"Sent download email to {payload['to'][0]} (id={message_id!r})")
    return message_id
