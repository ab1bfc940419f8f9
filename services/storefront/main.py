"""
Storefront Service: FastAPI app for CRATEY checkout, fulfillment, and library access.

Mounts the Stripe webhook router from `cratey.webhook` over a SQLAlchemy
entity store, plus the checkout and library endpoints that depend on the
same ownership predicate.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from cratey.checkout import create_checkout
from cratey.errors import StorefrontError
from cratey.fulfillment import FulfillmentEngine
from cratey.library import (
    RateLimiter,
    audio_url,
    list_library,
    record_download,
    redeem_access_token,
    send_library_access_email,
)
from cratey.models import (
    AudioUrlRequest,
    AudioUrlResponse,
    CheckoutRequest,
    CheckoutResponse,
    DownloadRequest,
    LibraryAccessRequest,
    LibraryItem,
    LibraryRedeemRequest,
    MissingProductPolicy,
    OwnershipQuery,
    OwnershipResponse,
)
from cratey.notifications import Notifier, create_notifier
from cratey.payment import CheckoutProvider, create_payment_provider
from cratey.store import EntityStore, owns_product
from cratey.webhook import create_webhook_router
from services.storefront.database import async_session, get_session, init_db
from services.storefront.store import SqlEntityStore, SqlRateLimiter


APP_URL = os.getenv("CRATEY_APP_URL", "http://localhost:3000")
MISSING_PRODUCT_POLICY = MissingProductPolicy(os.getenv("CRATEY_MISSING_PRODUCT_POLICY", "skip"))
LIBRARY_EMAIL_COOLDOWN_SECONDS = float(os.getenv("CRATEY_LIBRARY_EMAIL_COOLDOWN_SECONDS", "60"))
AUTO_CREATE_TABLES = os.getenv("CRATEY_AUTO_CREATE_TABLES", "true").lower() == "true"

logger = logging.getLogger(__name__)

provider = create_payment_provider()
notifier = create_notifier()
rate_limiter = SqlRateLimiter(async_session, cooldown_seconds=LIBRARY_EMAIL_COOLDOWN_SECONDS)


# ── Dependencies (overridden in tests) ───────────────────────────────────

async def get_store(db: AsyncSession = Depends(get_session)) -> AsyncGenerator[EntityStore, None]:
    yield SqlEntityStore(db)


def get_notifier() -> Notifier:
    return notifier


def get_provider() -> CheckoutProvider:
    return provider


def get_rate_limiter() -> RateLimiter:
    return rate_limiter


def get_engine(
    store: EntityStore = Depends(get_store),
    notifier: Notifier = Depends(get_notifier),
) -> FulfillmentEngine:
    return FulfillmentEngine(
        store,
        notifier,
        missing_product_policy=MISSING_PRODUCT_POLICY,
        app_url=APP_URL,
    )


# ── FastAPI App ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    if AUTO_CREATE_TABLES:
        try:
            await init_db()
        except Exception as exc:
            logger.warning("Table creation on startup failed: %s", exc)
    yield


app = FastAPI(
    title="CRATEY Storefront Service",
    description="Direct-to-fan music storefront: checkout, Stripe fulfillment, and library access",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.public_message})


# Mount the Stripe webhook router
app.include_router(create_webhook_router(get_engine))


# ── Checkout ─────────────────────────────────────────────────────────────

@app.post("/checkout", response_model=CheckoutResponse)
async def checkout_endpoint(
    body: CheckoutRequest,
    store: EntityStore = Depends(get_store),
    provider: CheckoutProvider = Depends(get_provider),
):
    return await create_checkout(store, provider, body, app_url=APP_URL)


# ── Library ──────────────────────────────────────────────────────────────

@app.get("/library")
async def library_endpoint(
    email: str = Query(..., min_length=3),
    store: EntityStore = Depends(get_store),
):
    items: list[LibraryItem] = await list_library(store, email)
    return {
        "items": [item.model_dump(mode="json", exclude={"access_token"}) for item in items],
        "total": len(items),
    }


@app.post("/library/verify", response_model=OwnershipResponse)
async def verify_ownership_endpoint(
    body: OwnershipQuery,
    store: EntityStore = Depends(get_store),
):
    return OwnershipResponse(has_access=await owns_product(store, body.email, body.product_id))


@app.post("/library/audio-url", response_model=AudioUrlResponse)
async def audio_url_endpoint(
    body: AudioUrlRequest,
    store: EntityStore = Depends(get_store),
):
    return await audio_url(store, body.email, body.product_id, body.track_index, body.token)


@app.post("/library/access-email")
async def library_access_email_endpoint(
    body: LibraryAccessRequest,
    store: EntityStore = Depends(get_store),
    notifier: Notifier = Depends(get_notifier),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    await send_library_access_email(store, notifier, limiter, body.email, app_url=APP_URL)
    return {"success": True}


@app.post("/library/access")
async def redeem_library_link_endpoint(
    body: LibraryRedeemRequest,
    store: EntityStore = Depends(get_store),
):
    access, items = await redeem_access_token(store, body.token)
    return {
        "buyer_email": access.buyer_email,
        "expires_at": access.expires_at,
        "items": [item.model_dump(mode="json") for item in items],
        "total": len(items),
    }


@app.post("/library/{item_id}/download")
async def download_endpoint(
    item_id: str,
    body: DownloadRequest,
    store: EntityStore = Depends(get_store),
):
    count = await record_download(store, item_id, body.token)
    return {"message": "Download counted", "download_count": count}


@app.get("/health")
async def health():
    return {"status": "ok", "service": "storefront"}
