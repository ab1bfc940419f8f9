"""
Library access primitives: listing, download counting, full-track URLs,
and the "email me my library link" flow.

Every check here reads LibraryItem ownership fresh from the store.
"""

from __future__ import annotations

import abc
import hmac
import logging
import math
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from cratey.errors import LibraryAccessError
from cratey.models import (
    AudioUrlResponse,
    LibraryAccessToken,
    LibraryItem,
    Order,
    as_utc,
    utcnow,
)
from cratey.notifications import Notifier, library_url, render
from cratey.store import EntityStore

logger = logging.getLogger(__name__)

SIGNED_URL_TTL_SECONDS = 3600
ACCESS_TOKEN_TTL = timedelta(hours=24)


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


async def list_library(store: EntityStore, email: str) -> list[LibraryItem]:
    items = await store.find(LibraryItem, buyer_email=normalize_email(email))
    return sorted(items, key=lambda item: as_utc(item.purchase_date), reverse=True)


async def _item_with_token(store: EntityStore, item_id: str, token: str) -> LibraryItem:
    item = await store.get(LibraryItem, item_id)
    if item is None:
        raise LibraryAccessError(404, "Library item not found")
    if not hmac.compare_digest(item.access_token, token or ""):
        raise LibraryAccessError(403, "Invalid access token")
    return item


async def record_download(store: EntityStore, item_id: str, token: str) -> int:
    """Count a download against the item and its order; returns the item's new count."""
    item = await _item_with_token(store, item_id, token)
    async with store.atomic():
        count = await store.increment(LibraryItem, item.id, "download_count")
        if await store.get(Order, item.order_id) is not None:
            await store.increment(Order, item.order_id, "download_count")
    return count


async def audio_url(
    store: EntityStore,
    email: str,
    product_id: str,
    track_index: int,
    token: str,
) -> AudioUrlResponse:
    items = await store.find(LibraryItem, buyer_email=normalize_email(email), product_id=product_id)
    if not items:
        raise LibraryAccessError(403, "You do not own this product")
    item = items[0]
    if not hmac.compare_digest(item.access_token, token or ""):
        raise LibraryAccessError(403, "Invalid access token")
    if track_index >= len(item.audio_urls):
        raise LibraryAccessError(404, "Track not found")
    # TODO: sign against private object storage once audio moves off public URLs.
    return AudioUrlResponse(signed_url=item.audio_urls[track_index], expires_in=SIGNED_URL_TTL_SECONDS)


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

class RateLimiter(abc.ABC):
    """Per-key cooldown. Shared deployments need a shared backing store."""

    @abc.abstractmethod
    async def hit(self, key: str) -> Optional[float]:
        """
        Record a request for `key`. Returns None when allowed, otherwise the
        seconds remaining in the cooldown (and the request is not recorded).
        """
        ...


class InMemoryRateLimiter(RateLimiter):
    """Process-local limiter; only correct for a single instance."""

    def __init__(self, cooldown_seconds: float = 60, clock: Callable[[], datetime] = utcnow):
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self.clock = clock
        self._last: dict[str, datetime] = {}

    async def hit(self, key: str) -> Optional[float]:
        now = self.clock()
        last = self._last.get(key)
        if last is not None and now - last < self.cooldown:
            return (self.cooldown - (now - last)).total_seconds()
        self._last[key] = now
        return None


async def send_library_access_email(
    store: EntityStore,
    notifier: Notifier,
    limiter: RateLimiter,
    email: str,
    *,
    app_url: str,
    clock: Callable[[], datetime] = utcnow,
) -> LibraryAccessToken:
    if not email or "@" not in email:
        raise LibraryAccessError(400, "Valid email required")

    buyer_email = normalize_email(email)
    remaining = await limiter.hit(buyer_email)
    if remaining is not None:
        raise LibraryAccessError(
            429, f"Please wait {math.ceil(remaining)} seconds before requesting another link"
        )

    items = await store.find(LibraryItem, buyer_email=buyer_email)
    if not items:
        raise LibraryAccessError(404, "No purchases found")

    access = await store.create(
        LibraryAccessToken(
            buyer_email=buyer_email,
            token=secrets.token_urlsafe(24),
            expires_at=clock() + ACCESS_TOKEN_TTL,
        )
    )

    html_body = render(
        "library_access.html",
        item_count=len(items),
        expires_hours=int(ACCESS_TOKEN_TTL.total_seconds() // 3600),
        cta_url=library_url(app_url, buyer_email, access.token),
        cta_label="Open My Library",
    )
    await notifier.send_email(buyer_email, "Access Your CRATEY Library", html_body)
    logger.info("Sent library access link to %s (%d items)", buyer_email, len(items))
    return access


async def redeem_access_token(
    store: EntityStore,
    token: str,
    *,
    clock: Callable[[], datetime] = utcnow,
) -> tuple[LibraryAccessToken, list[LibraryItem]]:
    """
    Exchange an emailed library link for the buyer's items, access tokens
    included. Links stay valid until they expire; the first redemption marks
    them used.
    """
    matches = await store.find(LibraryAccessToken, token=token or "")
    if not matches:
        raise LibraryAccessError(403, "Invalid access link")
    access = matches[0]
    if clock() >= as_utc(access.expires_at):
        raise LibraryAccessError(403, "This access link has expired")

    if not access.used:
        await store.update(LibraryAccessToken, access.id, used=True)
        access = access.model_copy(update={"used": True})

    items = await list_library(store, access.buyer_email)
    logger.info("Library link redeemed for %s (%d items)", access.buyer_email, len(items))
    return access, items
