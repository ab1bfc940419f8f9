"""
CRATEY: direct-to-fan music storefront core.

Verifies Stripe checkout webhooks and turns each completed session into
Orders and LibraryItems (bundles included), with a best-effort purchase
confirmation email.

Example usage:
    from cratey import (
        FulfillmentEngine,
        InMemoryEntityStore,
        LoggingNotifier,
        create_webhook_router,
    )

    engine = FulfillmentEngine(InMemoryEntityStore(), LoggingNotifier())
    app.include_router(create_webhook_router(lambda: engine))
"""

__version__ = "0.1.0"

# Export main models
from cratey.models import (
    Artist,
    BundleConfig,
    CheckoutRequest,
    CheckoutResponse,
    EditionType,
    FulfillmentReport,
    FulfillmentStatus,
    LibraryAccessToken,
    LibraryItem,
    MissingProductPolicy,
    Order,
    OrderStatus,
    Product,
    ProductOutcome,
    SkipReason,
    StandardPricing,
    TimedDropPricing,
    WebhookEvent,
)

# Export errors
from cratey.errors import (
    CheckoutError,
    CrateyError,
    DuplicateEntityError,
    LibraryAccessError,
    MissingMetadataError,
    WebhookConfigurationError,
    WebhookSignatureError,
)

# Export engine components
from cratey.store import EntityStore, InMemoryEntityStore, owns_product
from cratey.fulfillment import FulfillmentEngine, PurchaseRequest, expand_session, split_revenue
from cratey.notifications import HttpEmailNotifier, LoggingNotifier, Notifier, create_notifier
from cratey.payment import CheckoutProvider, create_payment_provider
from cratey.checkout import create_checkout
from cratey.webhook import create_webhook_router, verify_webhook

__all__ = [
    "__version__",
    # Models
    "Artist",
    "BundleConfig",
    "CheckoutRequest",
    "CheckoutResponse",
    "EditionType",
    "FulfillmentReport",
    "FulfillmentStatus",
    "LibraryAccessToken",
    "LibraryItem",
    "MissingProductPolicy",
    "Order",
    "OrderStatus",
    "Product",
    "ProductOutcome",
    "SkipReason",
    "StandardPricing",
    "TimedDropPricing",
    "WebhookEvent",
    # Errors
    "CheckoutError",
    "CrateyError",
    "DuplicateEntityError",
    "LibraryAccessError",
    "MissingMetadataError",
    "WebhookConfigurationError",
    "WebhookSignatureError",
    # Engine
    "EntityStore",
    "InMemoryEntityStore",
    "owns_product",
    "FulfillmentEngine",
    "PurchaseRequest",
    "expand_session",
    "split_revenue",
    "HttpEmailNotifier",
    "LoggingNotifier",
    "Notifier",
    "create_notifier",
    "CheckoutProvider",
    "create_payment_provider",
    "create_checkout",
    "create_webhook_router",
    "verify_webhook",
]
