"""
Purchase Fulfillment Engine.

Turns one verified `checkout.session.completed` event into Orders and
LibraryItems:

    expand_session()  ->  PurchaseRequest (ordered product ids)
    FulfillmentEngine.fulfill()
        for each product id, sequentially, inside store.atomic():
            lookup -> ownership guard -> edition reservation
            -> Order -> LibraryItem -> product/artist counters
        then one best-effort confirmation email

Business-rule skips (missing product, already owned, sold out) never raise.
Storage errors propagate so the webhook answers 500 and Stripe redelivers;
the ownership guard and the LibraryItem uniqueness constraint keep the
redelivery from double-fulfilling.
"""

from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional

from cratey.errors import DuplicateEntityError, MissingMetadataError
from cratey.models import (
    Artist,
    CheckoutSessionObject,
    FulfillmentReport,
    FulfillmentStatus,
    LibraryItem,
    MissingProductPolicy,
    Order,
    OrderStatus,
    Product,
    ProductOutcome,
    SkipReason,
    utcnow,
)
from cratey.notifications import Notifier, send_purchase_confirmation
from cratey.store import EntityStore, owns_product

logger = logging.getLogger(__name__)

# ── Platform policy: 8% platform fee, 92% to the artist ─────────────────
PLATFORM_FEE_RATE = Decimal("0.08")


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class RevenueSplit:
    amount_cents: int
    platform_fee_cents: int
    artist_payout_cents: int


def split_revenue(amount_cents: int) -> RevenueSplit:
    """Fee is rounded half-up; the payout takes the remainder so the parts always sum."""
    fee = round_half_up(Decimal(amount_cents) * PLATFORM_FEE_RATE)
    return RevenueSplit(
        amount_cents=amount_cents,
        platform_fee_cents=fee,
        artist_payout_cents=amount_cents - fee,
    )


def bundle_share(amount_total: Optional[int], product_count: int) -> int:
    """Even per-product share of what the provider actually captured (None counts as 0)."""
    if product_count <= 0:
        raise ValueError("product_count must be positive")
    return round_half_up(Decimal(amount_total or 0) / Decimal(product_count))


# ---------------------------------------------------------------------------
# Session expansion
# ---------------------------------------------------------------------------

@dataclass
class PurchaseRequest:
    session_id: str
    buyer_email: str
    product_ids: list[str]
    is_bundle: bool = False
    amount_total: int = 0
    currency: str = "USD"
    payment_intent: Optional[str] = None
    metadata: dict = field(default_factory=dict)


def _parse_bundle_ids(raw: Optional[str]) -> list[str]:
    try:
        parsed = json.loads(raw or "[]")
    except json.JSONDecodeError as exc:
        raise MissingMetadataError(f"bundle_product_ids is not valid JSON: {exc}") from exc
    if parsed is None:
        return []
    if not isinstance(parsed, list) or not all(isinstance(pid, str) and pid for pid in parsed):
        raise MissingMetadataError("bundle_product_ids must be a JSON array of product ids")
    return parsed


def expand_session(session: CheckoutSessionObject) -> PurchaseRequest:
    """Turn checkout metadata into the ordered list of products to fulfill."""
    metadata = session.metadata or {}
    product_id = metadata.get("product_id")
    buyer_email = metadata.get("buyer_email")

    if not product_id or not buyer_email:
        raise MissingMetadataError(
            f"Checkout session {session.id} is missing product_id or buyer_email"
        )

    is_bundle = metadata.get("is_bundle") == "true"
    product_ids = [product_id]
    if is_bundle:
        product_ids.extend(_parse_bundle_ids(metadata.get("bundle_product_ids")))

    return PurchaseRequest(
        session_id=session.id,
        buyer_email=buyer_email.strip().lower(),
        product_ids=product_ids,
        is_bundle=is_bundle,
        amount_total=session.amount_total or 0,
        currency=(session.currency or "usd").upper(),
        payment_intent=session.payment_intent,
        metadata=dict(metadata),
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class FulfillmentEngine:
    """Creates entitlements for a verified purchase against an `EntityStore`."""

    def __init__(
        self,
        store: EntityStore,
        notifier: Notifier,
        *,
        missing_product_policy: MissingProductPolicy = MissingProductPolicy.SKIP,
        app_url: str = "http://localhost:3000",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.notifier = notifier
        self.missing_product_policy = MissingProductPolicy(missing_product_policy)
        self.app_url = app_url
        self.clock = clock

    async def fulfill(self, purchase: PurchaseRequest) -> FulfillmentReport:
        report = FulfillmentReport(
            session_id=purchase.session_id,
            buyer_email=purchase.buyer_email,
            is_bundle=purchase.is_bundle,
        )

        if self.missing_product_policy == MissingProductPolicy.FLAG:
            missing = [
                pid for pid in purchase.product_ids
                if await self.store.get(Product, pid) is None
            ]
            if missing:
                logger.error(
                    "Session %s references missing products %s; nothing fulfilled, "
                    "flagged for manual refund",
                    purchase.session_id,
                    missing,
                )
                report.missing_product_ids = missing
                report.needs_manual_review = True
                report.outcomes = [
                    ProductOutcome.skipped(
                        pid,
                        SkipReason.MISSING if pid in missing else SkipReason.BUNDLE_INCOMPLETE,
                    )
                    for pid in purchase.product_ids
                ]
                return report

        for product_id in purchase.product_ids:
            outcome = await self._fulfill_product(purchase, product_id)
            report.outcomes.append(outcome)
            if outcome.reason == SkipReason.MISSING:
                report.missing_product_ids.append(product_id)

        report.email_sent = await send_purchase_confirmation(
            self.notifier,
            self.store,
            report,
            app_url=self.app_url,
        )

        logger.info(
            "Session %s for %s: %d fulfilled, %d skipped",
            purchase.session_id,
            purchase.buyer_email,
            len(report.fulfilled),
            len(report.skipped),
        )
        return report

    async def _fulfill_product(self, purchase: PurchaseRequest, product_id: str) -> ProductOutcome:
        try:
            async with self.store.atomic():
                return await self._fulfill_in_transaction(purchase, product_id)
        except DuplicateEntityError:
            # Lost a race with a concurrent delivery of the same session.
            logger.warning(
                "Product %s already owned by %s (concurrent delivery of %s)",
                product_id,
                purchase.buyer_email,
                purchase.session_id,
            )
            return ProductOutcome.skipped(product_id, SkipReason.ALREADY_OWNED)

    def charged_price(self, purchase: PurchaseRequest) -> int:
        # The captured amount is authoritative; listed prices only shape the checkout quote.
        return bundle_share(purchase.amount_total, len(purchase.product_ids))

    async def _fulfill_in_transaction(
        self,
        purchase: PurchaseRequest,
        product_id: str,
    ) -> ProductOutcome:
        product = await self.store.get(Product, product_id)
        if product is None:
            logger.warning(
                "Product %s in session %s no longer exists; skipping",
                product_id,
                purchase.session_id,
            )
            return ProductOutcome.skipped(product_id, SkipReason.MISSING)

        if await owns_product(self.store, purchase.buyer_email, product_id):
            logger.warning(
                "%s already owns %s; skipping (session %s)",
                purchase.buyer_email,
                product_id,
                purchase.session_id,
            )
            return ProductOutcome.skipped(product_id, SkipReason.ALREADY_OWNED)

        amount = self.charged_price(purchase)
        split = split_revenue(amount)

        edition_number = None
        if product.is_limited:
            edition_number = await self.store.increment(
                Product, product.id, "total_sales", ceiling="edition_limit"
            )
            if edition_number is None:
                logger.warning(
                    "Product %s sold out (%s/%s) before session %s completed; skipping",
                    product.id,
                    product.total_sales,
                    product.edition_limit,
                    purchase.session_id,
                )
                return ProductOutcome.skipped(product_id, SkipReason.SOLD_OUT)

        order = await self.store.create(
            Order(
                buyer_email=purchase.buyer_email,
                artist_id=product.artist_id,
                product_id=product.id,
                product_title=product.title,
                artist_name=product.artist_name,
                amount_cents=split.amount_cents,
                platform_fee_cents=split.platform_fee_cents,
                artist_payout_cents=split.artist_payout_cents,
                currency=purchase.currency,
                status=OrderStatus.PAID,
                stripe_session_id=purchase.session_id,
                stripe_payment_intent=purchase.payment_intent,
                edition_name=product.edition_name,
                edition_number=edition_number,
            )
        )

        item = await self.store.create(
            LibraryItem(
                buyer_email=purchase.buyer_email,
                product_id=product.id,
                order_id=order.id,
                product_title=product.title,
                artist_name=product.artist_name,
                artist_slug=product.artist_slug,
                cover_url=product.cover_url,
                audio_urls=list(product.audio_urls),
                track_names=list(product.track_names),
                access_token=secrets.token_urlsafe(24),
                edition_name=product.edition_name,
                edition_number=edition_number,
                purchase_date=self.clock(),
            )
        )

        if not product.is_limited:
            await self.store.increment(Product, product.id, "total_sales")
        await self.store.increment(Product, product.id, "total_revenue_cents", amount)
        await self._credit_artist(product.artist_id, split)

        logger.info(
            "Fulfilled %s for %s (session %s, order %s, amount %d%s)",
            product.id,
            purchase.buyer_email,
            purchase.session_id,
            order.id,
            amount,
            f", edition #{edition_number}" if edition_number else "",
        )
        return ProductOutcome(
            product_id=product.id,
            status=FulfillmentStatus.FULFILLED,
            order_id=order.id,
            library_item_id=item.id,
            edition_number=edition_number,
            amount_cents=amount,
            title=product.title,
            artist_name=product.artist_name,
        )

    async def _credit_artist(self, artist_id: str, split: RevenueSplit) -> None:
        artist = await self.store.get(Artist, artist_id)
        if artist is None:
            logger.debug("Artist %s not found; skipping artist stats", artist_id)
            return
        await self.store.increment(Artist, artist_id, "total_sales")
        await self.store.increment(Artist, artist_id, "total_revenue_cents", split.artist_payout_cents)
