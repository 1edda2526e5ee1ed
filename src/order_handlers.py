from datetime import timedelta
from typing import Optional

import stripe

from src.db.orders import (
    claim_listing,
    get_listing,
    get_order,
    get_profile,
    hold_listing,
    insert_order_if_absent,
    release_listing,
    reopen_listing,
    update_order_status,
)
from src.models.api import CancelWindowResponse
from src.models.order import (
    CancelOrderRequest,
    CartHoldRequest,
    CartReleaseRequest,
    MarkSoldRequest,
    OrderStatus,
    SHIPPED_OR_LATER,
    parse_order_status,
)
from src.utils import clock
from src.utils.errors import (
    AlreadyCanceled,
    Conflict,
    Forbidden,
    InternalError,
    NotFound,
    TooLate,
    UpstreamError,
    WindowExpired,
)
from src.utils.logger import api_logger, log_api_request, log_failure, log_success
from src.utils.money import cents_to_usd
from src.utils.notify import dispatch_notification, site_url
from src.utils.postmark import send_email
from src.utils.safe_handler import safe_handler
from src.utils.stripe import stripe_create_refund

CANCEL_WINDOW_MINUTES = 30


def _orders_href() -> str:
    return f"{site_url()}/orders.html"


def _title(order: dict) -> str:
    return order.get("listing_title") or "Your fabric"


def _is_shipped(order: dict) -> bool:
    status = parse_order_status(order.get("status"))
    return status in SHIPPED_OR_LATER or bool(order.get("shipped_at"))


def _elapsed(order: dict) -> Optional[timedelta]:
    created = clock.parse_ts(order.get("created_at"))
    if created is None:
        return None
    return clock.utcnow() - created


# ===============================================================
# paid order recording (shared by the Stripe webhook and /orders/mark-sold)
# ===============================================================
async def _notify_paid(order: dict):
    title = _title(order)
    href = _orders_href()
    seller_id = order.get("seller_id")
    buyer_id = order.get("buyer_id")

    await dispatch_notification(
        seller_id, "sale", "Your item sold!", f"{title} has been purchased.", href
    )
    await dispatch_notification(
        seller_id,
        "warning",
        "Do NOT ship yet",
        f"Buyer may cancel for {CANCEL_WINDOW_MINUTES} minutes. Wait before shipping.",
        href,
    )
    await dispatch_notification(
        buyer_id,
        "order",
        "Order confirmed",
        f"Your purchase of {title} is confirmed.",
        href,
    )
    await dispatch_notification(
        buyer_id,
        "warning",
        f"{CANCEL_WINDOW_MINUTES}-minute cancellation window",
        f"You have {CANCEL_WINDOW_MINUTES} minutes to cancel from your Orders page.",
        href,
    )

    total = order.get("total_cents")
    await send_email(
        order.get("buyer_email"),
        f"Order {order['id']} confirmed - Hemline Market",
        f"Thanks for your order!\n\nItem: {title}\n"
        + (f"Total: ${cents_to_usd(int(total))}\n" if total else "")
        + f"\nYou can cancel within {CANCEL_WINDOW_MINUTES} minutes from {href}\n",
    )


async def _compensate_lost_listing(order: dict):
    """Another order already sold this listing: refund and cancel this one."""
    order_id = order["id"]
    payment_intent = order.get("stripe_payment_intent")
    api_logger.warning(
        f"⚠️ Listing {order.get('listing_id')} already sold, compensating order {order_id}"
    )

    if not payment_intent:
        log_failure(api_logger, f"Order {order_id} lost its listing but has no payment intent")
        return
    try:
        stripe_create_refund(
            payment_intent,
            idempotency_key=f"lost-race:{order_id}",
            metadata={"order_id": order_id, "reason": "listing_unavailable"},
        )
    except stripe.StripeError as e:
        # Left PAID so an admin refund can settle it
        log_failure(api_logger, f"Compensating refund for {order_id} failed: {e}")
        return

    update_order_status(
        order_id,
        OrderStatus.CANCELED,
        [OrderStatus.PAID],
        {"canceled_at": clock.iso(), "cancel_reason": "listing_unavailable"},
    )
    await dispatch_notification(
        order.get("buyer_id"),
        "refund",
        "Order canceled and refunded",
        f"Sorry, {_title(order)} sold to another buyer moments before your payment. "
        "You have been fully refunded.",
        _orders_href(),
    )


def is_same_payment(existing: dict, order: dict) -> bool:
    """
    True when two order rows describe the same Stripe payment.

    The checkout session id is compared first, then the payment intent; rows
    with neither in common are treated as the same payment.
    """
    for key in ("stripe_session_id", "stripe_payment_intent"):
        ours, theirs = order.get(key), existing.get(key)
        if ours and theirs:
            return ours == theirs
    return True


async def _refund_colliding_payment(order: dict):
    """A second payment reused an order id that is already taken: give the money back."""
    order_id = order["id"]
    payment_intent = order.get("stripe_payment_intent")
    log_failure(
        api_logger,
        f"Order id {order_id} already belongs to another payment, refunding {payment_intent}",
    )
    if not payment_intent:
        return
    try:
        stripe_create_refund(
            payment_intent,
            idempotency_key=f"collision:{order.get('stripe_session_id') or payment_intent}",
            metadata={"order_id": order_id, "reason": "order_id_collision"},
        )
    except stripe.StripeError as e:
        log_failure(api_logger, f"Refund for colliding payment {payment_intent} failed: {e}")
        return

    await dispatch_notification(
        order.get("buyer_id"),
        "refund",
        "Payment refunded",
        "We could not record your order, so your payment has been fully refunded.",
        _orders_href(),
    )


async def settle_paid_order(order: dict) -> dict:
    """
    Flip the order's listing to SOLD and notify both parties.

    Exactly one order can flip a listing; a loser is refunded and canceled.
    """
    order_id = order["id"]
    listing_id = order.get("listing_id")
    if listing_id and not claim_listing(listing_id, order_id):
        listing = get_listing(listing_id)
        if not listing or listing.get("order_id") != order_id:
            await _compensate_lost_listing(order)
            return {"order_id": order_id, "status": OrderStatus.CANCELED.value}

    await _notify_paid(order)
    return {"order_id": order_id, "status": OrderStatus.PAID.value}


async def record_paid_order(order: dict) -> dict:
    """
    Insert the order (idempotent on id) and, when it is PAID, settle it.

    A conflicting row only counts as a redelivery when it carries the same
    Stripe payment. Any other payment under a taken id is refunded.

    Returns:
        dict: ``{"order_id", "status", "duplicate"}`` plus ``collision`` when
        the id already belonged to a different payment
    """
    order_id = order["id"]
    if not insert_order_if_absent(order):
        existing = get_order(order_id) or {}
        if is_same_payment(existing, order):
            return {"order_id": order_id, "status": existing.get("status"), "duplicate": True}
        if parse_order_status(order.get("status")) == OrderStatus.PAID:
            await _refund_colliding_payment(order)
        else:
            log_failure(api_logger, f"Unpaid session reused order id {order_id}, ignored")
        return {
            "order_id": order_id,
            "status": existing.get("status"),
            "duplicate": False,
            "collision": True,
        }

    if parse_order_status(order.get("status")) != OrderStatus.PAID:
        log_success(api_logger, f"Order {order_id} recorded as {order.get('status')}")
        return {"order_id": order_id, "status": order.get("status"), "duplicate": False}

    result = await settle_paid_order(order)
    result["duplicate"] = False
    log_success(api_logger, f"Order {order_id} recorded, final status {result['status']}")
    return result


# ===============================================================
# /orders/cancel
# ===============================================================
@safe_handler(default_detail="Cancellation failed")
async def cancel_order_handler(payload: CancelOrderRequest) -> dict:
    log_api_request(
        api_logger,
        "POST",
        "/orders/cancel",
        {"order_id": payload.order_id, "buyer_id": payload.buyer_id},
    )

    # -------------------------
    # Preconditions (no side effects until all pass)
    # -------------------------
    order = get_order(payload.order_id)
    if not order:
        raise NotFound("Order not found")
    if order.get("buyer_id") != payload.buyer_id:
        raise Forbidden("You can only cancel your own orders")

    status = parse_order_status(order.get("status"))
    if status == OrderStatus.CANCELED:
        raise AlreadyCanceled()
    if _is_shipped(order):
        raise TooLate("Order has already shipped and can no longer be canceled")
    # Only a PAID order has a charge to refund; PENDING ones are canceled by Stripe events
    if status != OrderStatus.PAID:
        raise Conflict(
            f"Order cannot be canceled while {order.get('status')}",
            code="order_not_cancelable",
        )

    elapsed = _elapsed(order)
    if elapsed is None:
        raise InternalError("Order has no creation time")
    if elapsed > timedelta(minutes=CANCEL_WINDOW_MINUTES):
        raise WindowExpired(
            f"Orders can only be canceled within {CANCEL_WINDOW_MINUTES} minutes"
        )

    payment_intent = order.get("stripe_payment_intent")
    if not payment_intent:
        raise InternalError("Order has no payment reference")

    # -------------------------
    # Refund first; the status write depends on it
    # -------------------------
    try:
        stripe_create_refund(
            payment_intent,
            idempotency_key=f"cancel:{order['id']}",
            reason="requested_by_customer",
            metadata={"order_id": order["id"]},
        )
    except stripe.StripeError as e:
        api_logger.error(f"❌ Refund for order {order['id']} failed: {e}")
        raise UpstreamError("Refund could not be processed, please try again")

    now_iso = clock.iso()
    updated = update_order_status(
        order["id"],
        OrderStatus.CANCELED,
        [OrderStatus.PAID],
        {"canceled_at": now_iso, "cancel_reason": "buyer_request"},
    )
    if not updated:
        # Refund went through but the row moved on under us
        log_failure(api_logger, f"Order {order['id']} refunded but status no longer PAID")
        raise Conflict("Order changed during cancellation", code="order_changed")

    if order.get("listing_id"):
        try:
            reopen_listing(order["listing_id"], order["id"])
        except Exception as e:
            api_logger.exception(f"Failed to reopen listing {order['listing_id']}: {e}")

    # -------------------------
    # Notify both parties (best effort)
    # -------------------------
    title = _title(order)
    href = _orders_href()
    await dispatch_notification(
        order.get("seller_id"),
        "order",
        "Order canceled",
        f"The buyer canceled their order for {title}. Do not ship.",
        href,
    )
    await dispatch_notification(
        order.get("buyer_id"),
        "refund",
        "Order canceled",
        f"Your order for {title} was canceled and refunded.",
        href,
    )
    await send_email(
        order.get("buyer_email"),
        f"Order {order['id']} canceled - Hemline Market",
        f"Your order for {title} was canceled. A full refund is on its way.\n",
    )
    try:
        seller = get_profile(order.get("seller_id"))
    except Exception as e:
        api_logger.warning(f"Seller profile lookup failed for cancel email: {e}")
        seller = None
    if seller:
        await send_email(
            seller.get("email"),
            f"Order {order['id']} canceled - do not ship",
            f"The buyer canceled their order for {title}. Please do not ship it.\n",
        )

    log_success(api_logger, f"Order {order['id']} canceled and refunded")
    return {"success": True}


# ===============================================================
# /orders/{order_id}/cancel-window
# ===============================================================
@safe_handler(default_detail="Could not load order")
async def cancel_window_handler(order_id: str) -> CancelWindowResponse:
    order = get_order(order_id)
    if not order:
        raise NotFound("Order not found")

    created = clock.parse_ts(order.get("created_at"))
    if created is None:
        raise InternalError("Order has no creation time")
    now = clock.utcnow()
    elapsed = now - created
    window = timedelta(minutes=CANCEL_WINDOW_MINUTES)
    status = parse_order_status(order.get("status"))

    return CancelWindowResponse(
        order_id=order_id,
        created_at=clock.iso(created),
        now=clock.iso(now),
        elapsed_seconds=max(0, int(elapsed.total_seconds())),
        window_minutes=CANCEL_WINDOW_MINUTES,
        can_cancel=status == OrderStatus.PAID and not _is_shipped(order) and elapsed <= window,
        can_ship=status in (OrderStatus.PAID, OrderStatus.PROCESSING) and elapsed > window,
    )


# ===============================================================
# /orders/mark-sold (internal)
# ===============================================================
@safe_handler(default_detail="Could not record sale")
async def mark_sold_handler(payload: MarkSoldRequest) -> dict:
    log_api_request(
        api_logger,
        "POST",
        "/orders/mark-sold",
        {"order_id": payload.order_id, "listing_id": payload.listing_id},
    )

    now_iso = clock.iso()
    order = {
        "id": payload.order_id,
        "buyer_id": payload.buyer_id,
        "buyer_email": payload.buyer_email,
        "seller_id": payload.seller_id,
        "listing_id": payload.listing_id,
        "listing_title": payload.listing_name,
        "items": [{"name": payload.listing_name or "Item", "quantity": 1}],
        "seller_splits": {},
        "stripe_payment_intent": payload.payment_intent,
        "subtotal_cents": (payload.total_cents or 0) - payload.shipping_cents,
        "shipping_cents": payload.shipping_cents,
        "total_cents": payload.total_cents,
        "currency": "usd",
        "status": OrderStatus.PAID.value,
        "created_at": now_iso,
        "updated_at": now_iso,
    }
    result = await record_paid_order(order)
    return {"ok": True, **result}


# ===============================================================
# /cart/hold, /cart/release
# ===============================================================
@safe_handler(default_detail="Could not hold listing")
async def cart_hold_handler(payload: CartHoldRequest) -> dict:
    log_api_request(api_logger, "POST", "/cart/hold", payload.model_dump())
    if hold_listing(payload.listing_id, payload.user_id):
        return {"ok": True, "listing_id": payload.listing_id}
    if not get_listing(payload.listing_id):
        raise NotFound("Listing not found")
    raise Conflict("Listing is not available", code="listing_unavailable")


@safe_handler(default_detail="Could not release listing")
async def cart_release_handler(payload: CartReleaseRequest) -> dict:
    log_api_request(api_logger, "POST", "/cart/release", payload.model_dump())
    released = release_listing(payload.listing_id, payload.user_id)
    return {"ok": True, "listing_id": payload.listing_id, "released": released}
