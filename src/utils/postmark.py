import os
from typing import Optional

import httpx

from src.utils.logger import notify_logger

POSTMARK_URL = "https://api.postmarkapp.com/email"
DEFAULT_FROM = "Hemline Market <hello@hemlinemarket.com>"


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=10.0)


async def send_email(to: Optional[str], subject: str, text_body: str) -> bool:
    """Send a plain text email through Postmark. Skipped when no token is configured."""
    token = os.environ.get("POSTMARK_SERVER_TOKEN")
    if not token:
        notify_logger.debug("POSTMARK_SERVER_TOKEN not set, skipping email %r", subject)
        return False
    if not to:
        return False

    try:
        async with _client() as client:
            resp = await client.post(
                POSTMARK_URL,
                headers={
                    "Accept": "application/json",
                    "X-Postmark-Server-Token": token,
                },
                json={
                    "From": os.environ.get("FROM_EMAIL") or DEFAULT_FROM,
                    "To": to,
                    "Subject": subject,
                    "TextBody": text_body,
                    "MessageStream": "outbound",
                },
            )
        if resp.status_code >= 400:
            notify_logger.warning(
                "Postmark rejected email to %s: HTTP %d %s",
                to,
                resp.status_code,
                resp.text[:200],
            )
            return False
        notify_logger.info(f"📧 Email sent to {to}: {subject}")
        return True
    except Exception as e:
        notify_logger.warning("Postmark email to %s failed: %s", to, e)
        return False
