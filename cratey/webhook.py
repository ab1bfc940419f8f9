"""
Stripe Webhook Router Factory.

Provides `verify_webhook()` and `create_webhook_router()`, which mounts the
checkout-completed endpoint as a FastAPI APIRouter:

    router = create_webhook_router(get_engine)
    app.include_router(router)

The signature is checked with Stripe's own verification primitive over the
exact bytes received; the body is only parsed after it verifies.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Callable, Optional

import stripe
from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from cratey.errors import (
    CrateyError,
    MissingMetadataError,
    WebhookConfigurationError,
    WebhookPayloadError,
    WebhookSignatureError,
)
from cratey.fulfillment import FulfillmentEngine, expand_session
from cratey.models import WebhookEvent

logger = logging.getLogger(__name__)

CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
DEFAULT_TOLERANCE = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300"))


def verify_webhook(
    payload: bytes,
    signature: Optional[str],
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE,
) -> WebhookEvent:
    """Authenticate a raw webhook body and parse it into a `WebhookEvent`."""
    if not secret:
        raise WebhookConfigurationError()
    if not signature:
        raise WebhookSignatureError("Missing Stripe-Signature header")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise WebhookSignatureError(f"Body is not UTF-8: {exc}") from exc

    try:
        stripe.WebhookSignature.verify_header(body, signature, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        raise WebhookSignatureError(str(exc)) from exc

    try:
        return WebhookEvent.model_validate_json(payload)
    except ValidationError as exc:
        raise WebhookPayloadError(str(exc)) from exc


def _error(error: CrateyError) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content={"error": error.public_message})


def create_webhook_router(
    get_engine: Callable[..., Any],
    *,
    webhook_secret: Optional[str] = None,
    tolerance: int = DEFAULT_TOLERANCE,
    path: str = "/webhooks/stripe",
) -> APIRouter:
    """
    Create a FastAPI APIRouter with the Stripe webhook endpoint. `get_engine`
    is a FastAPI dependency yielding the `FulfillmentEngine` for the request.
    """
    router = APIRouter(tags=["Stripe Webhook"])

    @router.post(path)
    async def stripe_webhook(
        request: Request,
        engine: FulfillmentEngine = Depends(get_engine),
        stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    ):
        secret = webhook_secret if webhook_secret is not None else os.getenv("STRIPE_WEBHOOK_SECRET", "")
        payload = await request.body()

        try:
            event = verify_webhook(payload, stripe_signature, secret, tolerance)
        except WebhookConfigurationError as e:
            logger.error("Rejecting webhook: STRIPE_WEBHOOK_SECRET is not configured")
            return _error(e)
        except (WebhookSignatureError, WebhookPayloadError) as e:
            logger.error("Webhook verification failed: %s", e)
            return _error(e)

        if event.type != CHECKOUT_SESSION_COMPLETED:
            logger.debug("Ignoring %s event %s", event.type, event.id)
            return {"received": True}

        try:
            purchase = expand_session(event.checkout_session())
        except ValidationError as exc:
            logger.error("Event %s carries a malformed checkout session: %s", event.id, exc)
            return _error(MissingMetadataError())
        except MissingMetadataError as e:
            logger.error("Event %s: %s", event.id, e)
            return _error(e)

        try:
            await engine.fulfill(purchase)
        except Exception as exc:
            logger.exception("Fulfillment failed for session %s", purchase.session_id)
            return JSONResponse(status_code=500, content={"error": str(exc)})

        return {"received": True}

    return router
