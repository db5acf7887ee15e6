#!/usr/bin/env python3
"""
Dev helper: send a signed test orders webhook to the local Cardaverse backend.

Builds a minimal Shopify order with one personalised card line item (and
optionally a pre-designed one), signs the body with SHOPIFY_WEBHOOK_SECRET
the same way Shopify does, and POST-s it to /api/webhooks/orders.

Usage
-----
# Basic: one composed card, targeting localhost:8000
python scripts/send_test_order.py

# Point the card at your own images
python scripts/send_test_order.py \\
    --template https://cdn.example.com/t.png \\
    --product https://cdn.example.com/p.png \\
    --inside https://cdn.example.com/i.png

# Add a pre-designed card line item with a design URL
python scripts/send_test_order.py --design-url https://files.example.com/card.pdf

# Send legacy (unprefixed) property names
python scripts/send_test_order.py --legacy-names

# Print the payload and signature without sending
python scripts/send_test_order.py --dry-run

Environment / .env
------------------
SHOPIFY_WEBHOOK_SECRET   Signing secret (optional; unsigned when absent).
SHOPIFY_SHOP_DOMAIN      Sent as X-Shopify-Shop-Domain.
"""

import argparse
import base64
import hashlib
import hmac
import json
import os
import sys
import textwrap
import time
from pathlib import Path

import httpx
from dotenv import load_dotenv

_SAMPLE_IMAGE = "https://placehold.co/600x600.png"


# ---------------------------------------------------------------------------
# Payload builder
# ---------------------------------------------------------------------------

def _card_properties(args: argparse.Namespace) -> list[dict]:
    prefix = "" if args.legacy_names else "_"
    return [
        {"name": "Custom Message", "value": args.message},
        {"name": "Font", "value": args.font},
        {"name": "Color", "value": args.color},
        {"name": "Size", "value": args.size},
        {"name": f"{prefix}Product Image", "value": args.product},
        {"name": f"{prefix}Template Image", "value": args.template},
        {"name": f"{prefix}Inside Template", "value": args.inside},
    ]


def _build_order(args: argparse.Namespace) -> dict:
    order_number = args.order_number or int(time.time()) % 100000
    line_items = [
        {
            "id": 1,
            "variant_id": 1001,
            "title": "Personalised Card",
            "quantity": 1,
            "properties": _card_properties(args),
        }
    ]
    if args.design_url:
        prefix = "" if args.legacy_names else "_"
        line_items.append(
            {
                "id": 2,
                "variant_id": 46650379796721,
                "title": "Custom Card",
                "quantity": 1,
                "properties": [{"name": f"{prefix}Design URL", "value": args.design_url}],
            }
        )
    return {
        "id": order_number,
        "order_number": order_number,
        "email": args.email,
        "billing_address": {"first_name": args.first_name},
        "line_items": line_items,
    }


def _sign(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def _print_response(response: httpx.Response) -> None:
    status = response.status_code
    symbol = "OK" if status == 200 else "FAIL"
    print(f"\n[{symbol}] HTTP {status}")
    try:
        print(json.dumps(response.json(), indent=2))
    except ValueError:
        print(response.text)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> int:
    # scripts/ lives one level below the project root
    project_root = Path(__file__).resolve().parent.parent
    load_dotenv(project_root / ".env")
    load_dotenv(project_root / "backend" / ".env")

    parser = argparse.ArgumentParser(
        prog="send_test_order.py",
        description=textwrap.dedent("""\
            Send a signed Shopify orders webhook to the Cardaverse backend.

            Reads SHOPIFY_WEBHOOK_SECRET and SHOPIFY_SHOP_DOMAIN from the
            environment or a .env file in the project root.
        """),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--url", default="http://localhost:8000",
                        help="Backend base URL (default: http://localhost:8000)")
    parser.add_argument("--email", default="customer@example.com",
                        help="Customer email address (default: customer@example.com)")
    parser.add_argument("--first-name", default="Alex", help="Billing first name")
    parser.add_argument("--order-number", type=int, default=None,
                        help="Order number (default: derived from the current time)")
    parser.add_argument("--message", default="Happy Birthday!", help="Inside message")
    parser.add_argument("--font", default="helvetica")
    parser.add_argument("--color", default="#333333")
    parser.add_argument("--size", default="24px")
    parser.add_argument("--template", default=_SAMPLE_IMAGE, help="Front template image URL")
    parser.add_argument("--product", default=_SAMPLE_IMAGE, help="Product image URL")
    parser.add_argument("--inside", default=_SAMPLE_IMAGE, help="Inside template image URL")
    parser.add_argument("--design-url", default=None, metavar="URL",
                        help="Also add a pre-designed card line item with this design URL")
    parser.add_argument("--legacy-names", action="store_true",
                        help="Use unprefixed (legacy) property names")
    parser.add_argument("--secret", default=None, metavar="SECRET",
                        help="Override SHOPIFY_WEBHOOK_SECRET")
    parser.add_argument("--dry-run", action="store_true",
                        help="Print the payload and headers without sending.")

    args = parser.parse_args()

    payload = _build_order(args)
    body = json.dumps(payload).encode()

    headers = {"Content-Type": "application/json"}
    shop_domain = os.getenv("SHOPIFY_SHOP_DOMAIN", "")
    if shop_domain:
        headers["X-Shopify-Shop-Domain"] = shop_domain
    secret = args.secret or os.getenv("SHOPIFY_WEBHOOK_SECRET", "")
    if secret:
        headers["X-Shopify-Hmac-Sha256"] = _sign(body, secret)
    else:
        print("WARNING: no SHOPIFY_WEBHOOK_SECRET; sending unsigned", file=sys.stderr)

    endpoint = f"{args.url.rstrip('/')}/api/webhooks/orders"
    print(f"Endpoint : {endpoint}")
    print(f"Order    : #{payload['order_number']} ({len(payload['line_items'])} line item(s))")
    print(f"Email    : {args.email}")

    if args.dry_run:
        print("\n[DRY RUN] Headers:")
        print(json.dumps(headers, indent=2))
        print("\n[DRY RUN] Payload:")
        print(json.dumps(payload, indent=2))
        return 0

    try:
        response = httpx.post(endpoint, content=body, headers=headers, timeout=120.0)
    except httpx.HTTPError as e:
        print(f"\nERROR: request failed: {e}", file=sys.stderr)
        return 1

    _print_response(response)
    return 0 if response.status_code == 200 else 1


if __name__ == "__main__":
    sys.exit(main())
