import asyncio

import httpx

import src.utils.notify as notify_utils
from src.utils.notify import dispatch_notification
from src.utils.postmark import send_email

INTERNAL = {"x-internal-secret": "internal-secret"}


# ---------- /notify ----------

def test_notify_inserts_unread_notification(client, db):
    body = {"user_id": "usr_1", "kind": "sale", "title": "  Your item sold!  ", "body": "Silk", "href": "/orders.html"}
    res = client.post("/api/v1/notify", json=body, headers=INTERNAL)
    assert res.status_code == 200
    data = res.json()
    assert data["ok"] is True
    assert data["id"]

    row = db.row("notifications", user_id="usr_1")
    assert row["title"] == "Your item sold!"
    assert row["kind"] == "sale"
    assert row["is_read"] is False
    assert row["created_at"]


def test_notify_requires_internal_secret(client, db):
    res = client.post("/api/v1/notify", json={"user_id": "usr_1", "title": "Hi"})
    assert res.status_code == 401
    assert db.rows("notifications") == []


def test_notify_rejects_blank_title(client, db):
    res = client.post("/api/v1/notify", json={"user_id": "usr_1", "title": "   "}, headers=INTERNAL)
    assert res.status_code == 400
    assert res.json()["code"] == "validation_error"


# ---------- dispatch_notification ----------

def test_dispatch_posts_to_notify_endpoint(notifications):
    ok = asyncio.run(dispatch_notification("usr_1", "order", "Order confirmed", "Thanks", "/orders.html"))
    assert ok is True
    request = notifications.requests[0]
    assert request.url == "https://hemline.test/api/v1/notify"
    assert request.json == {
        "user_id": "usr_1",
        "kind": "order",
        "title": "Order confirmed",
        "body": "Thanks",
        "href": "/orders.html",
    }


def test_dispatch_without_user_is_skipped(notifications):
    assert asyncio.run(dispatch_notification(None, "order", "x")) is False
    assert notifications.requests == []


def test_dispatch_swallows_rejections(monkeypatch):
    def failing_client():
        return httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))
        )

    monkeypatch.setattr(notify_utils, "_client", failing_client)
    assert asyncio.run(dispatch_notification("usr_1", "order", "x")) is False


# ---------- send_email ----------

def test_email_skipped_without_postmark_token(emails):
    assert asyncio.run(send_email("a@example.com", "Hi", "Body")) is False
    assert emails.requests == []


def test_email_sent_with_token(emails, monkeypatch):
    monkeypatch.setenv("POSTMARK_SERVER_TOKEN", "pm-token")
    assert asyncio.run(send_email("a@example.com", "Hi", "Body")) is True
    sent = emails.payloads[0]
    assert sent["To"] == "a@example.com"
    assert sent["Subject"] == "Hi"
    assert sent["TextBody"] == "Body"
