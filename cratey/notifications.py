"""
Notification Dispatch.

`Notifier` is the email collaborator. `HttpEmailNotifier` posts to a
transactional email API; `LoggingNotifier` only logs, for development.
`create_notifier()` picks one from env config.

Purchase confirmations are best-effort: `send_purchase_confirmation`
catches and logs every failure and reports whether the email went out.
"""

from __future__ import annotations

import abc
import logging
import os
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional
from urllib.parse import quote

import httpx
from jinja2 import DictLoader, Environment, select_autoescape

from cratey.models import Artist, FulfillmentReport, Product

if TYPE_CHECKING:
    from cratey.store import EntityStore

logger = logging.getLogger(__name__)


class Notifier(abc.ABC):
    @abc.abstractmethod
    async def send_email(self, to: str, subject: str, html_body: str) -> None:
        ...


class LoggingNotifier(Notifier):
    """Logs emails instead of sending them."""

    def __init__(self):
        self.outbox: list[dict] = []

    async def send_email(self, to: str, subject: str, html_body: str) -> None:
        self.outbox.append({"to": to, "subject": subject, "html": html_body})
        logger.info("Email to %s: %s (%d bytes)", to, subject, len(html_body))


class HttpEmailNotifier(Notifier):
    """Sends through an HTTP email API (`POST {from, to, subject, html}` with a bearer key)."""

    def __init__(
        self,
        api_url: str,
        api_key: str = "",
        sender: str = "CRATEY <music@cratey.app>",
        timeout: float = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout
        self._transport = transport

    async def send_email(self, to: str, subject: str, html_body: str) -> None:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                self.api_url,
                json={"from": self.sender, "to": [to], "subject": subject, "html": html_body},
                headers=headers,
            )
            response.raise_for_status()


def create_notifier(api_url: Optional[str] = None) -> Notifier:
    url = api_url or os.getenv("CRATEY_EMAIL_API_URL", "")
    if url:
        return HttpEmailNotifier(
            api_url=url,
            api_key=os.getenv("CRATEY_EMAIL_API_KEY", ""),
            sender=os.getenv("CRATEY_EMAIL_FROM", "CRATEY <music@cratey.app>"),
        )
    return LoggingNotifier()


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

_LAYOUT = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <style>
    body { margin: 0; padding: 0; font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; }
    .container { max-width: 600px; margin: 0 auto; background: #ffffff; }
    .header { background: #000000; color: #ffffff; padding: 40px 20px; text-align: center; }
    .content { padding: 40px 20px; color: #333333; line-height: 1.6; }
    .cta { text-align: center; padding: 30px 20px; }
    .button { display: inline-block; padding: 14px 32px; background: #000000; color: #ffffff; text-decoration: none; border-radius: 8px; font-weight: 600; }
    .footer { background: #f5f5f5; padding: 20px; text-align: center; font-size: 12px; color: #666666; }
  </style>
</head>
<body>
  <div class="container">
    <div class="header"><h1 style="margin: 0; font-size: 24px;">{% block heading %}{% endblock %}</h1></div>
    <div class="content">{% block content %}{% endblock %}</div>
    <div class="cta"><a href="{{ cta_url }}" class="button">{{ cta_label }}</a></div>
    <div class="footer"><p style="margin: 0;">&copy; {{ year }} CRATEY &bull; {% block tagline %}Own your music{% endblock %}</p></div>
  </div>
</body>
</html>
"""

_PURCHASE_CONFIRMATION = """{% extends "layout.html" %}
{% block heading %}Thanks for your purchase!{% endblock %}
{% block content %}
<p>You now own:</p>
<ul style="margin: 16px 0; padding-left: 20px;">
{% for item in items %}  <li style="margin-bottom: 8px;"><strong>{{ item.title }}</strong>{% if item.artist_name %} by {{ item.artist_name }}{% endif %}{% if item.edition_number %} (edition #{{ item.edition_number }}){% endif %}</li>
{% endfor %}</ul>
{% if is_bundle %}<div style="background: #f0fdf4; border: 1px solid #86efac; padding: 12px; border-radius: 8px; margin-top: 16px;">
  <p style="margin: 0; color: #166534; font-weight: 600;">Bundle Discount Applied!</p>
</div>{% endif %}
<p>Your music is ready to download. No expiration, no limits. It's yours forever.</p>
{% if thank_you_note %}<div style="border-top: 2px solid #e5e5e5; margin-top: 24px; padding-top: 24px;">
  <p style="font-style: italic; color: #666; margin-bottom: 8px;">A personal message from the artist:</p>
  <p style="color: #333;">{{ thank_you_note }}</p>
</div>{% endif %}
<p style="font-size: 14px; color: #999; margin-top: 24px;">Order ID: {{ order_id }}</p>
{% endblock %}
{% block tagline %}Artists keep 92% of every sale{% endblock %}
"""

_LIBRARY_ACCESS = """{% extends "layout.html" %}
{% block heading %}CRATEY{% endblock %}
{% block content %}
<h2 style="margin-top: 0;">Your Music Library</h2>
<p>You have <strong>{{ item_count }} item{{ "" if item_count == 1 else "s" }}</strong> in your crate.</p>
<p>Click below to access all your CRATEY purchases. Download anytime, anywhere.</p>
<p style="color: #999; font-size: 14px; margin-top: 20px;">This link expires in {{ expires_hours }} hours.</p>
{% endblock %}
"""

env = Environment(
    loader=DictLoader(
        {
            "layout.html": _LAYOUT,
            "purchase_confirmation.html": _PURCHASE_CONFIRMATION,
            "library_access.html": _LIBRARY_ACCESS,
        }
    ),
    autoescape=select_autoescape(["html"]),
)


def library_url(app_url: str, email: str, token: Optional[str] = None) -> str:
    url = f"{app_url.rstrip('/')}/Library?email={quote(email, safe='')}"
    if token:
        url += f"&token={quote(token, safe='')}"
    return url


def render(name: str, **ctx) -> str:
    ctx.setdefault("year", datetime.now(timezone.utc).year)
    return env.get_template(name).render(**ctx)


def purchase_subject(titles: list[str], is_bundle: bool) -> str:
    if is_bundle and len(titles) > 1:
        return f"You own {len(titles)} releases!"
    return f'You own "{titles[0]}"'


async def send_purchase_confirmation(
    notifier: Notifier,
    store: "EntityStore",
    report: FulfillmentReport,
    *,
    app_url: str,
) -> bool:
    """Send one consolidated confirmation for every fulfilled product. Never raises."""
    fulfilled = report.fulfilled
    if not fulfilled:
        logger.info("No products fulfilled for session %s; no confirmation email", report.session_id)
        return False

    try:
        first = await store.get(Product, fulfilled[0].product_id)
        artist = await store.get(Artist, first.artist_id) if first else None

        html_body = render(
            "purchase_confirmation.html",
            items=fulfilled,
            is_bundle=report.is_bundle,
            thank_you_note=artist.thank_you_note if artist else None,
            order_id=fulfilled[0].order_id,
            cta_url=library_url(app_url, report.buyer_email),
            cta_label="Download Your Music",
        )
        subject = purchase_subject([o.title or o.product_id for o in fulfilled], report.is_bundle)
        await notifier.send_email(report.buyer_email, subject, html_body)
    except Exception as exc:
        logger.warning(
            "Purchase email for session %s to %s failed: %s",
            report.session_id,
            report.buyer_email,
            exc,
        )
        return False

    return True
