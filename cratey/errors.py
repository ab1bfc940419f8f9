"""Exception hierarchy shared by the webhook, fulfillment, and storefront layers."""

from __future__ import annotations

from typing import Optional


class CrateyError(Exception):
    """Base class for CRATEY errors that map onto an HTTP status."""

    status_code = 500
    public_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)


class WebhookConfigurationError(CrateyError):
    """The webhook secret is missing; an operator must fix the deployment."""

    status_code = 500
    public_message = "Stripe webhook not configured"


class WebhookSignatureError(CrateyError):
    status_code = 400
    public_message = "Invalid signature"


class WebhookPayloadError(CrateyError):
    status_code = 400
    public_message = "Invalid payload"


class MissingMetadataError(CrateyError):
    """Checkout metadata is server-authored, so this indicates an upstream bug."""

    status_code = 400
    public_message = "Missing metadata"


class DuplicateEntityError(CrateyError):
    """A uniqueness constraint on an entity store rejected an insert."""

    status_code = 409
    public_message = "Duplicate entity"


class StorefrontError(CrateyError):
    """Request-level failure raised by storefront operations; carries its own status."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.public_message = message
        super().__init__(message)


class CheckoutError(StorefrontError):
    pass


class LibraryAccessError(StorefrontError):
    pass
