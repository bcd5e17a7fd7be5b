from __future__ import annotations

import asyncio
from html import escape
from urllib.parse import quote

import resend
import structlog

from pricewise.src.config import Settings
from pricewise.src.contracts.models import NotificationIntent, User

logger = structlog.get_logger(__name__)

_MAX_RETRIES = 3
_BASE_DELAY = 1.0


def _display_name(intent: NotificationIntent) -> str:
    return intent.product_name or intent.product_id


def build_subject(intent: NotificationIntent, currency_symbol: str) -> str:
    return (
        f"Price Alert: {_display_name(intent)} is now "
        f"{currency_symbol}{intent.triggering_price:.2f}"
    )


def render_email_html(
    intent: NotificationIntent,
    user_email: str,
    frontend_url: str,
    currency_symbol: str,
) -> str:
    """Render the HTML body for a fired price alert."""
    product_name = escape(_display_name(intent))
    store_name = escape(intent.store_name or intent.store_id)
    product_url = intent.source_url or f"{frontend_url}/products/{intent.product_id}"
    details_url = f"{frontend_url}/products/{intent.product_id}"
    alerts_url = escape(f"{frontend_url}/alerts?email={quote(user_email, safe='')}")
    price = f"{currency_symbol}{intent.triggering_price:.2f}"
    target = f"{currency_symbol}{intent.target_price:.2f}"
    savings = f"{currency_symbol}{intent.savings:.2f}"

    return f"""\
<!DOCTYPE html>
<html lang="en">
<head><meta charset="utf-8"><meta name="viewport" content="width=device-width,initial-scale=1"></head>
<body style="margin:0;padding:0;background:#f4f4f5;font-family:Arial,Helvetica,sans-serif;">
<table width="100%" cellpadding="0" cellspacing="0" style="background:#f4f4f5;padding:24px 0;">
<tr><td align="center">
<table width="600" cellpadding="0" cellspacing="0" style="background:#ffffff;border-radius:8px;overflow:hidden;">
  <tr><td style="background:#1e3a8a;padding:20px 24px;color:#ffffff;font-size:20px;font-weight:bold;">
    Pricewise
  </td></tr>
  <tr><td style="padding:24px;">
    <span style="display:inline-block;background:#dcfce7;color:#15803d;font-size:12px;font-weight:600;padding:4px 10px;border-radius:4px;margin-bottom:12px;">Target Price Reached</span>
    <h1 style="margin:12px 0 8px;font-size:22px;color:#111827;">{product_name}</h1>
    <p style="margin:0 0 8px;font-size:28px;font-weight:bold;color:#16a34a;">
      {price}
      <span style="font-size:14px;color:#6b7280;margin-left:8px;">at {store_name}</span>
    </p>
    <p style="margin:0 0 16px;font-size:14px;color:#374151;">
      Your target was {target}. That is {savings} below your target.
    </p>
    <a href="{product_url}" style="display:inline-block;background:#1e3a8a;color:#ffffff;text-decoration:none;padding:12px 32px;border-radius:6px;font-size:16px;font-weight:600;">View Deal</a>
    <a href="{details_url}" style="display:inline-block;margin-left:12px;color:#1e3a8a;font-size:14px;">Compare all stores</a>
  </td></tr>
  <tr><td style="padding:16px 24px;background:#f9fafb;border-top:1px solid #e5e7eb;font-size:12px;color:#9ca3af;text-align:center;">
    This alert has now been switched off. Set it again any time from your alerts page.<br>
    <a href="{alerts_url}" style="color:#6b7280;">Manage alerts</a>
  </td></tr>
</table>
</td></tr>
</table>
</body>
</html>"""


class EmailNotifier:
    """Sends price alert emails via the Resend API."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        resend.api_key = settings.resend_api_key

    async def send(self, intent: NotificationIntent, user: User) -> bool:
        html = render_email_html(
            intent=intent,
            user_email=user.email,
            frontend_url=self._settings.frontend_url,
            currency_symbol=self._settings.currency_symbol,
        )
        subject = build_subject(intent, self._settings.currency_symbol)

        log = logger.bind(
            user_id=str(user.id),
            alert_id=str(intent.alert_id),
            product_id=intent.product_id,
            channel="email",
        )

        last_exc: Exception | None = None
        for attempt in range(_MAX_RETRIES):
            try:
                await asyncio.to_thread(
                    resend.Emails.send,
                    {
                        "from": self._settings.resend_from_email,
                        "to": [user.email],
                        "subject": subject,
                        "html": html,
                    },
                )
                log.info("email_sent", attempt=attempt + 1)
                return True
            except Exception as exc:  # noqa: BLE001
                last_exc = exc
                delay = _BASE_DELAY * (2**attempt)
                log.warning(
                    "email_send_failed",
                    attempt=attempt + 1,
                    error=str(exc),
                    retry_in=delay,
                )
                if attempt < _MAX_RETRIES - 1:
                    await asyncio.sleep(delay)

        log.error("email_send_exhausted", error=str(last_exc))
        return False
