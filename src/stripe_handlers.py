from typing import Any, Dict

import stripe
from fastapi import Request

from src.db.orders import get_order, mark_connect_account_verified, update_order_status
from src.models.order import OrderStatus
from src.order_handlers import is_same_payment, record_paid_order, settle_paid_order
from src.utils import clock
from src.utils.errors import ValidationError
from src.utils.logger import log_api_request, log_success, webhook_logger
from src.utils.metadata import (
    decode_checkout_metadata,
    resolve_buyer_email,
    resolve_buyer_id,
)
from src.utils.notify import dispatch_notification, site_url
from src.utils.stripe import stripe_verify_webhook

PAID_PAYMENT_STATUSES = ("paid", "no_payment_required")


def order_from_session(session: Dict[str, Any], event_id: str) -> Dict[str, Any]:
    """Build the orders row for a completed checkout session."""
    meta = decode_checkout_metadata(session.get("metadata"))
    order_id = meta["order_id"] or session.get("id")

    subtotal = meta["subtotal_cents"] or int(session.get("amount_subtotal") or 0)
    shipping = meta["shipping_cents"]
    if not shipping:
        shipping_cost = session.get("shipping_cost") or {}
        shipping = int(shipping_cost.get("amount_total") or 0)

    paid = (session.get("payment_status") or "").lower() in PAID_PAYMENT_STATUSES
    now_iso = clock.iso()

    return {
        "id": order_id,
        "stripe_session_id": session.get("id"),
        "stripe_payment_intent": session.get("payment_intent"),
        "stripe_event_id": event_id,
        "buyer_id": resolve_buyer_id(session),
        "buyer_email": resolve_buyer_email(session),
        "seller_id": meta["seller_id"],
        "listing_id": meta["listing_id"],
        "listing_title": meta["title"],
        "items": meta["items"],
        "seller_splits": meta["sellers"],
        "subtotal_cents": subtotal,
        "shipping_cents": shipping,
        "total_cents": subtotal + shipping,
        "currency": meta["currency"],
        "status": (OrderStatus.PAID if paid else OrderStatus.PENDING).value,
        "created_at": now_iso,
        "updated_at": now_iso,
    }


# -------------------------
# event handlers
# -------------------------
async def _on_checkout_completed(session: Dict[str, Any], event_id: str):
    order = order_from_session(session, event_id)
    result = await record_paid_order(order)
    if result.get("duplicate"):
        webhook_logger.info(f"⏭️ Duplicate completion for order {order['id']}, ignored")
    elif result.get("collision"):
        webhook_logger.warning(
            f"⚠️ Session {session.get('id')} reused order id {order['id']}, not recorded"
        )


async def _on_async_payment_succeeded(session: Dict[str, Any], event_id: str):
    session = dict(session, payment_status="paid")
    order = order_from_session(session, event_id)
    order_id = order["id"]

    existing = get_order(order_id)
    if existing is None or not is_same_payment(existing, order):
        # completed event never landed, or the id is taken by another payment
        await record_paid_order(order)
        return

    updated = update_order_status(
        order_id,
        OrderStatus.PAID,
        [OrderStatus.PENDING],
        {"stripe_payment_intent": session.get("payment_intent")},
    )
    if updated:
        await settle_paid_order(updated)
        return
    webhook_logger.info(f"⏭️ Order {order_id} not PENDING, async success ignored")


async def _on_async_payment_failed(session: Dict[str, Any], event_id: str):
    order = order_from_session(session, event_id)
    order_id = order["id"]
    existing = get_order(order_id)
    if existing is None or not is_same_payment(existing, order):
        webhook_logger.info(f"⏭️ No order for session {session.get('id')}, async failure ignored")
        return

    updated = update_order_status(
        order_id,
        OrderStatus.CANCELED,
        [OrderStatus.PENDING],
        {"canceled_at": clock.iso(), "cancel_reason": "payment_failed"},
    )
    if updated:
        await dispatch_notification(
            updated.get("buyer_id"),
            "order",
            "Payment failed",
            "Your payment did not go through and the order was canceled.",
            f"{site_url()}/orders.html",
        )


async def _on_account_updated(account: Dict[str, Any], event_id: str):
    if not account.get("charges_enabled"):
        return
    if mark_connect_account_verified(account.get("id")):
        log_success(webhook_logger, f"Seller account {account.get('id')} verified")


EVENT_HANDLERS = {
    "checkout.session.completed": _on_checkout_completed,
    "checkout.session.async_payment_succeeded": _on_async_payment_succeeded,
    "checkout.session.async_payment_failed": _on_async_payment_failed,
    "account.updated": _on_account_updated,
}


# ===============================================================
# /stripe/webhook
# ===============================================================
async def stripe_webhook_handler(request: Request) -> dict:
    raw = await request.body()
    sig = request.headers.get("stripe-signature")

    # -------------------------
    # Verify before parsing anything
    # -------------------------
    try:
        event = stripe_verify_webhook(raw, sig)
    except (ValueError, stripe.SignatureVerificationError) as e:
        webhook_logger.warning(f"⚠️ Stripe webhook rejected: {e}")
        raise ValidationError("Invalid webhook signature", code="invalid_signature")

    event_type = event.get("type")
    event_id = event.get("id")
    log_api_request(webhook_logger, "POST", "/stripe/webhook", {"type": event_type, "id": event_id})

    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        webhook_logger.debug(f"Ignoring Stripe event {event_type}")
        return {"received": True}

    obj = (event.get("data") or {}).get("object") or {}
    try:
        await handler(obj, event_id)
    except Exception as e:
        # Acked anyway so Stripe stops redelivering; reconciled from logs
        webhook_logger.exception(f"❌ Failed processing {event_type} {event_id}: {e}")

    return {"received": True}
