import os

import pytest
import pytest_asyncio

# The storefront app reads these at import time.
os.environ.setdefault("CRATEY_AUTO_CREATE_TABLES", "false")
os.environ.setdefault("STRIPE_SECRET_KEY", "")

from cratey.models import (
    Artist,
    BundleConfig,
    EditionType,
    Product,
    StandardPricing,
)
from cratey.store import InMemoryEntityStore

from helpers import RecordingNotifier


@pytest_asyncio.fixture
async def store() -> InMemoryEntityStore:
    store = InMemoryEntityStore()
    await store.create(
        Artist(id="art_nova", name="Nova", slug="nova", thank_you_note="Thanks for supporting <b>indie</b> music!")
    )
    await store.create(
        Product(
            id="P1",
            artist_id="art_nova",
            artist_name="Nova",
            artist_slug="nova",
            title="First Light",
            cover_url="https://cdn.example.com/p1.jpg",
            audio_urls=["https://cdn.example.com/p1-1.mp3", "https://cdn.example.com/p1-2.mp3"],
            track_names=["Dawn", "Noon"],
            pricing=StandardPricing(price_cents=999),
            bundle=BundleConfig(product_ids=["P2", "P3"], discount_percent=20),
        )
    )
    await store.create(
        Product(
            id="P2",
            artist_id="art_nova",
            artist_name="Nova",
            title="Second Wind",
            pricing=StandardPricing(price_cents=800),
            bundle=BundleConfig(product_ids=["P1"], discount_percent=10),
        )
    )
    await store.create(
        Product(
            id="P3",
            artist_id="art_other",
            artist_name="Orbit",
            title="Third Eye",
            pricing=StandardPricing(price_cents=700),
        )
    )
    await store.create(
        Product(
            id="LTD",
            artist_id="art_nova",
            artist_name="Nova",
            title="Numbered Vinyl Rip",
            pricing=StandardPricing(price_cents=2500),
            edition_type=EditionType.LIMITED,
            edition_limit=2,
            edition_name="First Press",
        )
    )
    return store


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()
