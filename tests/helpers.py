"""Shared test doubles and Stripe payload builders."""

import hashlib
import hmac
import json
import time
from typing import Optional

from cratey.notifications import Notifier

WEBHOOK_SECRET = "whsec_test_secret"


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.".encode("utf-8") + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def checkout_event(
    metadata: dict,
    amount_total: Optional[int] = 999,
    session_id: str = "cs_test_1",
    event_type: str = "checkout.session.completed",
    created: Optional[int] = None,
) -> bytes:
    return json.dumps(
        {
            "id": f"evt_{session_id}",
            "object": "event",
            "type": event_type,
            "created": created or int(time.time()),
            "data": {
                "object": {
                    "id": session_id,
                    "object": "checkout.session",
                    "amount_total": amount_total,
                    "currency": "usd",
                    "payment_intent": f"pi_{session_id}",
                    "created": created or int(time.time()),
                    "metadata": metadata,
                }
            },
        }
    ).encode("utf-8")


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent: list[dict] = []

    async def send_email(self, to: str, subject: str, html_body: str) -> None:
        self.sent.append({"to": to, "subject": subject, "html": html_body})


class FailingNotifier(Notifier):
    def __init__(self):
        self.attempts = 0

    async def send_email(self, to: str, subject: str, html_body: str) -> None:
        self.attempts += 1
        raise RuntimeError("email provider unavailable")


