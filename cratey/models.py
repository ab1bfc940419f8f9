"""
CRATEY Pydantic Models: catalog, purchase records, and webhook payloads.

All monetary amounts are integers in the smallest currency unit (cents).
Emails are stored lower-cased; the (buyer_email, product_id) pair on a
LibraryItem is the ownership predicate used across the storefront.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so drop windows compare cleanly."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class EditionType(str, Enum):
    UNLIMITED = "unlimited"
    LIMITED = "limited"


class OrderStatus(str, Enum):
    PAID = "paid"
    REFUNDED = "refunded"


class FulfillmentStatus(str, Enum):
    FULFILLED = "fulfilled"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    MISSING = "missing"
    ALREADY_OWNED = "already_owned"
    SOLD_OUT = "sold_out"
    BUNDLE_INCOMPLETE = "bundle_incomplete"


class MissingProductPolicy(str, Enum):
    SKIP = "skip"
    FLAG = "flag"


# ---------------------------------------------------------------------------
# Base entity
# ---------------------------------------------------------------------------

class Entity(BaseModel):
    """Base for records held by an entity store."""

    UNIQUE_TOGETHER: ClassVar[tuple[str, ...]] = ()

    id: str


# ---------------------------------------------------------------------------
# Pricing (tagged variant)
# ---------------------------------------------------------------------------

class StandardPricing(BaseModel):
    kind: Literal["standard"] = "standard"
    price_cents: int = Field(ge=0)

    def effective_price(self, at: datetime) -> int:
        return self.price_cents


class TimedDropPricing(BaseModel):
    """Drop-window price that falls back to an archive price once it ends."""

    kind: Literal["timed_drop"] = "timed_drop"
    price_cents: int = Field(ge=0)
    archive_price_cents: int = Field(ge=0)
    ends_at: datetime

    def has_ended(self, at: datetime) -> bool:
        return as_utc(at) >= as_utc(self.ends_at)

    def effective_price(self, at: datetime) -> int:
        if self.has_ended(at):
            return self.archive_price_cents
        return self.price_cents


Pricing = Annotated[Union[StandardPricing, TimedDropPricing], Field(discriminator="kind")]


class BundleConfig(BaseModel):
    product_ids: list[str] = []
    discount_percent: float = Field(default=0, ge=0, le=100)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

class Artist(Entity):
    name: str
    slug: str = ""
    email: Optional[str] = None
    thank_you_note: Optional[str] = None
    total_sales: int = 0
    total_revenue_cents: int = 0


class Product(Entity):
    """A sellable release."""

    artist_id: str
    artist_name: str = ""
    artist_slug: str = ""
    title: str
    cover_url: Optional[str] = None
    audio_urls: list[str] = []
    track_names: list[str] = []
    currency: str = "usd"
    pricing: Pricing
    edition_type: EditionType = EditionType.UNLIMITED
    edition_limit: Optional[int] = Field(default=None, ge=1)
    edition_name: Optional[str] = None
    bundle: Optional[BundleConfig] = None
    total_sales: int = 0
    total_revenue_cents: int = 0

    @model_validator(mode="after")
    def _limited_needs_capacity(self) -> "Product":
        if self.edition_type == EditionType.LIMITED and self.edition_limit is None:
            raise ValueError("limited editions require edition_limit")
        return self

    @property
    def is_limited(self) -> bool:
        return self.edition_type == EditionType.LIMITED

    @property
    def is_sold_out(self) -> bool:
        return self.is_limited and self.total_sales >= (self.edition_limit or 0)

    def effective_price(self, at: Optional[datetime] = None) -> int:
        return self.pricing.effective_price(at or utcnow())


# ---------------------------------------------------------------------------
# Purchase records
# ---------------------------------------------------------------------------

class Order(Entity):
    """One paid line item. Immutable after creation apart from downloads and refunds."""

    id: str = Field(default_factory=lambda: _new_id("ord"))
    buyer_email: str
    artist_id: str
    product_id: str
    product_title: str = ""
    artist_name: str = ""
    amount_cents: int = Field(ge=0)
    platform_fee_cents: int = Field(ge=0)
    artist_payout_cents: int = Field(ge=0)
    currency: str = "USD"
    status: OrderStatus = OrderStatus.PAID
    stripe_session_id: str
    stripe_payment_intent: Optional[str] = None
    edition_name: Optional[str] = None
    edition_number: Optional[int] = None
    download_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class LibraryItem(Entity):
    """A buyer's entitlement, with display fields captured at purchase time."""

    UNIQUE_TOGETHER: ClassVar[tuple[str, ...]] = ("buyer_email", "product_id")

    id: str = Field(default_factory=lambda: _new_id("lib"))
    buyer_email: str
    product_id: str
    order_id: str
    product_title: str = ""
    artist_name: str = ""
    artist_slug: str = ""
    cover_url: Optional[str] = None
    audio_urls: list[str] = []
    track_names: list[str] = []
    access_token: str
    edition_name: Optional[str] = None
    edition_number: Optional[int] = None
    download_count: int = 0
    purchase_date: datetime = Field(default_factory=utcnow)


class LibraryAccessToken(Entity):
    id: str = Field(default_factory=lambda: _new_id("lat"))
    buyer_email: str
    token: str
    expires_at: datetime
    used: bool = False


# ---------------------------------------------------------------------------
# Fulfillment results
# ---------------------------------------------------------------------------

class ProductOutcome(BaseModel):
    product_id: str
    status: FulfillmentStatus
    reason: Optional[SkipReason] = None
    order_id: Optional[str] = None
    library_item_id: Optional[str] = None
    edition_number: Optional[int] = None
    amount_cents: Optional[int] = None
    title: Optional[str] = None
    artist_name: Optional[str] = None

    @classmethod
    def skipped(cls, product_id: str, reason: SkipReason) -> "ProductOutcome":
        return cls(product_id=product_id, status=FulfillmentStatus.SKIPPED, reason=reason)


class FulfillmentReport(BaseModel):
    session_id: str
    buyer_email: str
    is_bundle: bool = False
    outcomes: list[ProductOutcome] = []
    missing_product_ids: list[str] = []
    needs_manual_review: bool = False
    email_sent: bool = False

    @property
    def fulfilled(self) -> list[ProductOutcome]:
        return [o for o in self.outcomes if o.status == FulfillmentStatus.FULFILLED]

    @property
    def skipped(self) -> list[ProductOutcome]:
        return [o for o in self.outcomes if o.status == FulfillmentStatus.SKIPPED]


# ---------------------------------------------------------------------------
# Stripe webhook payloads (only the fields fulfillment reads)
# ---------------------------------------------------------------------------

class CheckoutSessionObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    object: str = "checkout.session"
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    payment_intent: Optional[str] = None
    customer_email: Optional[str] = None
    created: Optional[int] = None
    metadata: dict[str, Optional[str]] = Field(default_factory=dict)

    @property
    def created_at(self) -> Optional[datetime]:
        if self.created is None:
            return None
        return datetime.fromtimestamp(self.created, tz=timezone.utc)


class WebhookEventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: dict[str, Any]


class WebhookEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    created: Optional[int] = None
    data: WebhookEventData

    def checkout_session(self) -> CheckoutSessionObject:
        return CheckoutSessionObject.model_validate(self.data.object)


# ---------------------------------------------------------------------------
# Storefront API models
# ---------------------------------------------------------------------------

class CheckoutRequest(BaseModel):
    product_ids: list[str] = Field(min_length=1)
    buyer_email: str = Field(min_length=3)
    is_bundle: bool = False


class CheckoutResponse(BaseModel):
    session_id: str
    url: Optional[str] = None
    amount_total: int


class CheckoutLineItem(BaseModel):
    product_id: str
    name: str
    image_url: Optional[str] = None
    unit_amount: int
    currency: str = "usd"


class ProviderCheckoutSession(BaseModel):
    id: str
    url: Optional[str] = None
    amount_total: int
    metadata: dict[str, str] = {}


class OwnershipQuery(BaseModel):
    email: str
    product_id: str


class OwnershipResponse(BaseModel):
    has_access: bool


class DownloadRequest(BaseModel):
    token: str


class AudioUrlRequest(BaseModel):
    email: str
    product_id: str
    track_index: int = Field(ge=0)
    token: str


class AudioUrlResponse(BaseModel):
    signed_url: str
    expires_in: int


class LibraryAccessRequest(BaseModel):
    email: str


class LibraryRedeemRequest(BaseModel):
    token: str
