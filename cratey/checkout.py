"""
Checkout-session creation, the producer side of the webhook contract.

Prices each requested product (drop-window archive pricing, bundle
discount), refuses sold-out or already-owned products, and creates a
provider checkout session whose metadata is exactly what
`cratey.fulfillment.expand_session` parses.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional
from urllib.parse import quote

from cratey.errors import CheckoutError
from cratey.fulfillment import round_half_up
from cratey.models import (
    CheckoutLineItem,
    CheckoutRequest,
    CheckoutResponse,
    Product,
    utcnow,
)
from cratey.notifications import library_url
from cratey.payment import CheckoutProvider
from cratey.store import EntityStore, owns_product

logger = logging.getLogger(__name__)


def checkout_metadata(product_ids: list[str], buyer_email: str, is_bundle: bool) -> dict[str, str]:
    return {
        "product_id": product_ids[0],
        "buyer_email": buyer_email,
        "is_bundle": "true" if is_bundle else "false",
        "bundle_product_ids": json.dumps(product_ids[1:] if is_bundle else []),
    }


def unit_price(product: Product, *, bundle_size: int = 1, at: Optional[datetime] = None) -> int:
    """
    Listed price at `at`, less the product's bundle discount when it is sold
    as part of a multi-product bundle. The discount only shapes the quote;
    fulfillment splits whatever the provider captured.
    """
    price = product.effective_price(at or utcnow())
    if bundle_size > 1 and product.bundle and product.bundle.discount_percent:
        factor = Decimal(1) - Decimal(str(product.bundle.discount_percent)) / Decimal(100)
        price = round_half_up(Decimal(price) * factor)
    return price


async def create_checkout(
    store: EntityStore,
    provider: CheckoutProvider,
    request: CheckoutRequest,
    *,
    app_url: str,
    now: Optional[datetime] = None,
) -> CheckoutResponse:
    buyer_email = request.buyer_email.strip()
    if "@" not in buyer_email:
        raise CheckoutError(400, "buyer_email required")

    is_bundle = request.is_bundle and len(request.product_ids) > 1
    at = now or utcnow()
    line_items: list[CheckoutLineItem] = []

    for product_id in request.product_ids:
        product = await store.get(Product, product_id)
        if product is None:
            raise CheckoutError(404, f"Product {product_id} not found")
        if product.is_sold_out:
            raise CheckoutError(400, f"{product.title} is sold out")
        if await owns_product(store, buyer_email, product_id):
            raise CheckoutError(400, f"You already own {product.title}")

        line_items.append(
            CheckoutLineItem(
                product_id=product.id,
                name=f"{product.title} by {product.artist_name}" if product.artist_name else product.title,
                image_url=product.cover_url,
                unit_amount=unit_price(
                    product,
                    bundle_size=len(request.product_ids) if is_bundle else 1,
                    at=at,
                ),
                currency=product.currency,
            )
        )

    session = await provider.create_checkout_session(
        line_items=line_items,
        customer_email=buyer_email,
        metadata=checkout_metadata(request.product_ids, buyer_email, is_bundle),
        success_url=library_url(app_url, buyer_email),
        cancel_url=f"{app_url.rstrip('/')}/ProductPage?id={quote(request.product_ids[0], safe='')}",
    )

    logger.info(
        "Created checkout session %s for %s (%d products, %d cents)",
        session.id,
        buyer_email,
        len(line_items),
        session.amount_total,
    )
    return CheckoutResponse(session_id=session.id, url=session.url, amount_total=session.amount_total)
