"""
CRATEY Payment Provider Abstraction.

Provides a base class `CheckoutProvider` and two implementations:
- `MockCheckoutProvider`: in-memory mock for development/demos
- `StripeCheckoutProvider`: hosted Stripe Checkout sessions

The factory `create_payment_provider()` auto-selects based on env config.
"""

from __future__ import annotations

import abc
import asyncio
import os
import uuid
from typing import Optional

import stripe

from cratey.models import CheckoutLineItem, ProviderCheckoutSession


class CheckoutProvider(abc.ABC):
    """Abstract base for hosted-checkout providers."""

    @abc.abstractmethod
    async def create_checkout_session(
        self,
        *,
        line_items: list[CheckoutLineItem],
        customer_email: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> ProviderCheckoutSession:
        """Create a hosted checkout session carrying `metadata` verbatim."""
        ...


class MockCheckoutProvider(CheckoutProvider):
    """
    In-memory mock for development; records sessions without
    hitting any external service.
    """

    def __init__(self):
        self.sessions: dict[str, dict] = {}

    async def create_checkout_session(
        self,
        *,
        line_items: list[CheckoutLineItem],
        customer_email: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> ProviderCheckoutSession:
        session_id = f"cs_mock_{uuid.uuid4().hex[:16]}"
        amount_total = sum(item.unit_amount for item in line_items)

        self.sessions[session_id] = {
            "line_items": [item.model_dump() for item in line_items],
            "customer_email": customer_email,
            "metadata": dict(metadata),
            "success_url": success_url,
            "cancel_url": cancel_url,
        }

        return ProviderCheckoutSession(
            id=session_id,
            url=f"{success_url}&mock_session={session_id}",
            amount_total=amount_total,
            metadata=dict(metadata),
        )


class StripeCheckoutProvider(CheckoutProvider):
    """
    Stripe Checkout integration. Requires STRIPE_SECRET_KEY env var.
    """

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or os.getenv("STRIPE_SECRET_KEY", "")
        if not self.api_key:
            raise ValueError(
                "STRIPE_SECRET_KEY is required for StripeCheckoutProvider. "
                "Use MockCheckoutProvider for development."
            )

    async def create_checkout_session(
        self,
        *,
        line_items: list[CheckoutLineItem],
        customer_email: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> ProviderCheckoutSession:
        stripe.api_key = self.api_key

        # The stripe SDK call is blocking; run it off the event loop.
        session = await asyncio.to_thread(
            stripe.checkout.Session.create,
            payment_method_types=["card"],
            mode="payment",
            line_items=[
                {
                    "price_data": {
                        "currency": item.currency,
                        "product_data": {
                            "name": item.name,
                            "images": [item.image_url] if item.image_url else [],
                        },
                        "unit_amount": item.unit_amount,
                    },
                    "quantity": 1,
                }
                for item in line_items
            ],
            customer_email=customer_email,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
        )

        return ProviderCheckoutSession(
            id=session.id,
            url=session.url,
            amount_total=session.amount_total or sum(item.unit_amount for item in line_items),
            metadata=dict(metadata),
        )


def create_payment_provider(
    stripe_api_key: Optional[str] = None,
) -> CheckoutProvider:
    """
    Factory: returns StripeCheckoutProvider if an API key is available,
    otherwise falls back to MockCheckoutProvider.
    """
    key = stripe_api_key or os.getenv("STRIPE_SECRET_KEY", "")
    if key:
        return StripeCheckoutProvider(api_key=key)
    return MockCheckoutProvider()
