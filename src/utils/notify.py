"""
Fire-and-forget notification dispatch.

Every order flow handler informs buyer and seller through the internal
``/api/v1/notify`` endpoint. Delivery is best effort: errors are logged here
and never reach the caller's own transition.
"""

import os
from typing import Optional

import httpx

from src.utils.logger import notify_logger

NOTIFY_TIMEOUT_SECONDS = 5.0
DEFAULT_SITE_URL = "https://hemlinemarket.com"


def site_url() -> str:
    return (os.environ.get("SITE_URL") or DEFAULT_SITE_URL).rstrip("/")


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=NOTIFY_TIMEOUT_SECONDS)


async def dispatch_notification(
    user_id: Optional[str],
    kind: str,
    title: str,
    body: str = "",
    href: Optional[str] = None,
) -> bool:
    """
    POST ``{user_id, kind, title, body, href}`` to the notify endpoint.

    Returns True when the endpoint accepted the row, False otherwise.
    Never raises.
    """
    if not user_id:
        notify_logger.debug("Skipping notification %r: no user_id", kind)
        return False

    payload = {
        "user_id": user_id,
        "kind": kind,
        "title": title,
        "body": body,
        "href": href,
    }
    headers = {"x-internal-secret": os.environ.get("INTERNAL_API_SECRET", "")}

    try:
        async with _client() as client:
            resp = await client.post(
                f"{site_url()}/api/v1/notify", json=payload, headers=headers
            )
        if resp.status_code >= 400:
            notify_logger.warning(
                "Notification %s for %s rejected: HTTP %d %s",
                kind,
                user_id,
                resp.status_code,
                resp.text[:200],
            )
            return False
        notify_logger.info(f"🔔 Notified {user_id}: {kind}")
        return True
    except Exception as e:
        notify_logger.warning("Notification %s for %s failed: %s", kind, user_id, e)
        return False
