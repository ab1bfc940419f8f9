"""
Minimal storefront built on the cratey package, with no database.

This example shows the core pattern:
1. Seed: put a catalog into an EntityStore
2. Wire: build a FulfillmentEngine over the store and a Notifier
3. Deploy: mount the webhook router and a checkout route in your FastAPI app

Set STRIPE_WEBHOOK_SECRET (and optionally STRIPE_SECRET_KEY) before starting.
"""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse

from cratey import (
    CheckoutError,
    CheckoutRequest,
    CheckoutResponse,
    FulfillmentEngine,
    InMemoryEntityStore,
    LoggingNotifier,
    Product,
    StandardPricing,
    create_checkout,
    create_payment_provider,
    create_webhook_router,
)

APP_URL = "http://localhost:8000"

store = InMemoryEntityStore()
notifier = LoggingNotifier()
provider = create_payment_provider()

CATALOG = [
    Product(
        id="demo_single",
        artist_id="art_demo",
        artist_name="Demo Artist",
        title="Demo Single",
        audio_urls=["https://cdn.example.com/demo.mp3"],
        track_names=["Demo"],
        pricing=StandardPricing(price_cents=500),
    ),
]


def get_engine() -> FulfillmentEngine:
    return FulfillmentEngine(store, notifier, app_url=APP_URL)


async def seed_catalog():
    for product in CATALOG:
        if await store.get(Product, product.id) is None:
            await store.create(product)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await seed_catalog()
    yield


app = FastAPI(title="Simple CRATEY Storefront", lifespan=lifespan)

# POST /webhooks/stripe
app.include_router(create_webhook_router(get_engine))


@app.exception_handler(CheckoutError)
async def checkout_error_handler(request, exc: CheckoutError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.public_message})


@app.post("/checkout", response_model=CheckoutResponse)
async def checkout(body: CheckoutRequest, engine: FulfillmentEngine = Depends(get_engine)):
    return await create_checkout(engine.store, provider, body, app_url=APP_URL)


@app.get("/")
async def root():
    return {
        "message": "Simple CRATEY Storefront",
        "endpoints": [
            "POST /checkout - Create a Stripe checkout session",
            "POST /webhooks/stripe - Stripe webhook (checkout.session.completed)",
        ],
    }


if __name__ == "__main__":
    import uvicorn

    print("Starting Simple CRATEY Storefront on http://localhost:8000")
    print("API docs at http://localhost:8000/docs")
    uvicorn.run(app, host="0.0.0.0", port=8000)
