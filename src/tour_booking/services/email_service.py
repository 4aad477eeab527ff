"""SendGrid notification sink for tour booking alerts.

Delivers (title, content) alerts to the brokerage's booking inbox.
Uses asyncio.to_thread to wrap the synchronous SendGrid client.
"""

import asyncio
import html
import logging

import sendgrid
from sendgrid.helpers.mail import Email, HtmlContent, Mail, PlainTextContent, To

logger = logging.getLogger(__name__)


def _get_config():
    """Get email config from app settings (lazy to avoid import-time issues)."""
    from tour_booking.app.config import get_settings
    s = get_settings()
    return s.sendgrid_api_key, s.booking_alert_from, s.booking_alert_to


def _get_client() -> sendgrid.SendGridAPIClient:
    """Return a configured SendGrid API client."""
    api_key, _, _ = _get_config()
    return sendgrid.SendGridAPIClient(api_key=api_key)


def _build_alert_html(title: str, content: str) -> str:
    """Wrap plain alert text in a minimal HTML body."""
    body = html.escape(content).replace("\n", "<br>\n")
    return f"""
<!DOCTYPE html>
<html lang="en">
<head><meta charset="UTF-8"></head>
<body style="margin: 0; padding: 20px; font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; background-color: #f3f4f6;">
    <table width="600" cellpadding="0" cellspacing="0" style="background: #fff; border-radius: 8px; padding: 32px; margin: 0 auto;">
        <tr><td><h2 style="color: #1e3a5f; margin-top: 0;">{html.escape(title)}</h2></td></tr>
        <tr><td style="font-size: 14px; color: #374151; line-height: 1.6;">{body}</td></tr>
    </table>
</body>
</html>
"""


def _send_mail(mail: Mail) -> bool:
    """Synchronous send via SendGrid. Returns True on success."""
    client = _get_client()
    response = client.send(mail)
    if response.status_code in (200, 201, 202):
        return True
    logger.error(
        "SendGrid returned status %s: %s",
        response.status_code,
        response.body,
    )
    return False


class SendGridNotificationSink:
    """Notification sink: send(title, content) -> bool."""

    async def send(self, title: str, content: str) -> bool:
        api_key, alert_from, alert_to = _get_config()
        if not api_key or not alert_to:
            logger.warning("SENDGRID_API_KEY / BOOKING_ALERT_TO not set, skipping alert %r", title)
            return False

        try:
            mail = Mail(
                from_email=Email(alert_from, "3B Solution Tours"),
                to_emails=To(alert_to),
                subject=title,
                plain_text_content=PlainTextContent(content),
                html_content=HtmlContent(_build_alert_html(title, content)),
            )
            result = await asyncio.to_thread(_send_mail, mail)
            if result:
                logger.info("Booking alert sent: %s", title)
            return result
        except Exception:
            logger.exception("Failed to send booking alert %r", title)
            return False
