from typing import Dict, List, Optional

import stripe

from src.db.orders import (
    get_checkout_session,
    get_order,
    get_profile,
    get_shipment,
    list_orders,
    list_shipments,
    reopen_listing,
    update_order_fields,
    update_order_status,
)
from src.models.order import (
    ORDER_TRANSITIONS,
    AdminRefundRequest,
    OrderStatus,
    OrderStatusUpdate,
    SHIPPED_OR_LATER,
    can_transition,
    parse_order_status,
)
from src.checkout_handlers import platform_fee_rate
from src.utils import clock
from src.utils.errors import Conflict, NotFound, UpstreamError, ValidationError
from src.utils.logger import api_logger, log_api_request, log_failure, log_success
from src.utils.notify import dispatch_notification, site_url
from src.utils.safe_handler import safe_handler
from src.utils.shippo import shippo_void_label
from src.utils.stripe import stripe_create_refund, stripe_create_transfer

# Timestamps stamped when an admin moves an order into these states
STATUS_STAMPS = {
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELED: "canceled_at",
    OrderStatus.REFUNDED: "refunded_at",
}


def _load_order(order_id: str) -> dict:
    order = get_order(order_id)
    if not order:
        raise NotFound("Order not found")
    return order


def _provider_message(e: Exception) -> str:
    return getattr(e, "user_message", None) or str(e)


# ===============================================================
# /admin/orders
# ===============================================================
@safe_handler(default_detail="Could not list orders")
async def admin_list_orders_handler(status: Optional[str], limit: int) -> dict:
    log_api_request(api_logger, "GET", "/admin/orders", {"status": status, "limit": limit})
    wanted = None
    if status:
        parsed = parse_order_status(status)
        if parsed is None:
            raise ValidationError(f"Unknown order status: {status}")
        wanted = parsed.value
    orders = list_orders(wanted, limit=max(1, min(limit, 200)))
    return {"orders": orders, "count": len(orders)}


@safe_handler(default_detail="Could not load order")
async def admin_get_order_handler(order_id: str) -> dict:
    log_api_request(api_logger, "GET", f"/admin/orders/{order_id}")
    order = _load_order(order_id)
    status = parse_order_status(order.get("status"))
    return {
        "order": order,
        "shipment": get_shipment(order_id),
        "checkout_session": get_checkout_session(order_id),
        "diagnostics": {
            "normalized_status": status.value if status else None,
            "allowed_transitions": sorted(
                s.value for s in ORDER_TRANSITIONS.get(status, frozenset())
            ),
        },
    }


@safe_handler(default_detail="Could not update order")
async def admin_update_status_handler(order_id: str, payload: OrderStatusUpdate) -> dict:
    log_api_request(
        api_logger, "POST", f"/admin/orders/{order_id}/status", payload.model_dump()
    )
    target = parse_order_status(payload.status)
    if target is None:
        raise ValidationError(f"Unknown order status: {payload.status}")

    order = _load_order(order_id)
    current = parse_order_status(order.get("status"))
    if not can_transition(current, target):
        raise Conflict(
            f"Cannot move order from {order.get('status')} to {target.value}",
            code="illegal_transition",
        )

    fields = {}
    if target in STATUS_STAMPS:
        fields[STATUS_STAMPS[target]] = clock.iso()
    updated = update_order_status(order_id, target, [current], fields)
    if not updated:
        raise Conflict("Order changed while updating", code="order_changed")

    log_success(api_logger, f"Order {order_id}: {current.value} -> {target.value}")
    return {"ok": True, "order": updated}


# ===============================================================
# /admin/refund
# ===============================================================
@safe_handler(default_detail="Refund failed")
async def admin_refund_handler(payload: AdminRefundRequest) -> dict:
    log_api_request(api_logger, "POST", "/admin/refund", payload.model_dump())
    order = _load_order(payload.order_id)

    payment_intent = order.get("stripe_payment_intent")
    if not payment_intent:
        raise ValidationError("No payment_intent on order")

    total = int(order.get("total_cents") or 0)
    already = int(order.get("refunded_cents") or 0)
    remaining = total - already
    amount = payload.amount_cents
    if amount is not None and (amount <= 0 or (total and amount > remaining)):
        raise ValidationError(f"amount_cents must be between 1 and {remaining}")

    full = amount is None or amount == remaining
    current = parse_order_status(order.get("status"))
    if full and not can_transition(current, OrderStatus.REFUNDED):
        raise Conflict(
            f"Order in status {order.get('status')} cannot be refunded",
            code="illegal_transition",
        )

    try:
        refund = stripe_create_refund(
            payment_intent,
            idempotency_key=f"admin-refund:{order['id']}:{amount or 'full'}:{already}",
            amount=None if amount is None else amount,
            metadata={"hm_refund": "admin", "order_id": order["id"]},
        )
    except stripe.StripeError as e:
        raise UpstreamError(f"Stripe refund failed: {_provider_message(e)}")

    refunded = already + int(refund.get("amount") or amount or remaining)

    if not full:
        update_order_fields(order["id"], {"refunded_cents": refunded})
        log_success(api_logger, f"Partial refund {refund['id']} on {order['id']}")
        return {"ok": True, "refund": refund, "full": False}

    updated = update_order_status(
        order["id"],
        OrderStatus.REFUNDED,
        [current],
        {"refunded_at": clock.iso(), "refunded_cents": refunded},
    )
    if updated is None:
        # Refund already issued; record it without unwinding the sale
        update_order_fields(order["id"], {"refunded_cents": refunded})
        log_failure(
            api_logger,
            f"Order {order['id']} refunded ({refund['id']}) but left {current.value} meanwhile",
        )
        raise Conflict("Order changed while refunding", code="order_changed")

    # -------------------------
    # Unwind the sale (best effort)
    # -------------------------
    shipped = current in SHIPPED_OR_LATER or bool(order.get("shipped_at"))
    if order.get("listing_id") and not shipped:
        try:
            reopen_listing(order["listing_id"], order["id"])
        except Exception as e:
            api_logger.exception(f"Failed to reopen listing {order['listing_id']}: {e}")
    if not shipped:
        try:
            shipment = get_shipment(order["id"])
        except Exception as e:
            api_logger.warning(f"Shipment lookup failed for {order['id']}: {e}")
            shipment = None
        if shipment and shipment.get("transaction_id"):
            await shippo_void_label(shipment["transaction_id"])

    await dispatch_notification(
        order.get("buyer_id"),
        "refund",
        "Refund issued",
        f"Your order {order['id']} has been refunded.",
        f"{site_url()}/orders.html",
    )
    log_success(api_logger, f"Full refund {refund['id']} on {order['id']}")
    return {"ok": True, "refund": refund, "full": True}


# ===============================================================
# /admin/transfer (and the delivered-payout job)
# ===============================================================
def _payout_splits(order: dict) -> Dict[str, int]:
    splits = {k: int(v) for k, v in (order.get("seller_splits") or {}).items() if int(v) > 0}
    if not splits and order.get("seller_id"):
        subtotal = int(order.get("subtotal_cents") or 0)
        splits = {order["seller_id"]: subtotal - int(subtotal * platform_fee_rate())}

    refunded = int(order.get("refunded_cents") or 0)
    subtotal = int(order.get("subtotal_cents") or 0)
    if refunded and subtotal > 0:
        # partial refunds come out of every seller's share proportionally
        keep = max(0, subtotal - refunded) / subtotal
        splits = {k: int(v * keep) for k, v in splits.items()}
    return {k: v for k, v in splits.items() if v > 0}


def _destination(payee: str) -> Optional[str]:
    if payee.startswith("acct_"):
        return payee
    profile = get_profile(payee) or {}
    return profile.get("stripe_account_id")


async def release_payout(order: dict) -> dict:
    """
    Transfer each seller's share of a DELIVERED order and mark it COMPLETE.

    All destinations are resolved before the first transfer. Transfers carry
    per-destination idempotency keys, so a retry after a partial failure
    does not pay anyone twice.
    """
    order_id = order["id"]
    if parse_order_status(order.get("status")) != OrderStatus.DELIVERED:
        raise Conflict("Only delivered orders can be paid out", code="order_not_delivered")
    if order.get("payout_at"):
        raise Conflict("Order already paid out", code="already_paid_out")

    splits = _payout_splits(order)
    if not splits:
        raise Conflict("Order has nothing to pay out", code="nothing_to_pay")

    plan: List[tuple] = []
    for payee, cents in splits.items():
        dest = _destination(payee)
        if not dest:
            raise Conflict(
                f"Seller {payee} has no connected Stripe account",
                code="seller_not_connected",
            )
        plan.append((payee, dest, cents))

    transfer_ids = []
    for payee, dest, cents in plan:
        try:
            transfer = stripe_create_transfer(
                amount=cents,
                destination=dest,
                transfer_group=order_id,
                idempotency_key=f"payout:{order_id}:{dest}",
                currency=order.get("currency") or "usd",
                metadata={"order_id": order_id, "seller": payee},
            )
        except stripe.StripeError as e:
            raise UpstreamError(f"Stripe transfer to {dest} failed: {_provider_message(e)}")
        transfer_ids.append(transfer["id"])

    total = sum(cents for _, _, cents in plan)
    update_order_status(
        order_id,
        OrderStatus.COMPLETE,
        [OrderStatus.DELIVERED],
        {
            "payout_at": clock.iso(),
            "payout_amount_cents": total,
            "stripe_transfer_ids": transfer_ids,
        },
    )

    for payee, _, cents in plan:
        if not payee.startswith("acct_"):
            await dispatch_notification(
                payee,
                "payout",
                "Payout sent",
                f"${cents / 100:.2f} for order {order_id} is on its way to your bank.",
                f"{site_url()}/sales.html",
            )

    log_success(api_logger, f"Paid out {total} cents for {order_id} in {len(plan)} transfer(s)")
    return {"ok": True, "order_id": order_id, "transfers": transfer_ids, "amount_cents": total}


@safe_handler(default_detail="Transfer failed")
async def admin_transfer_handler(order_id: str) -> dict:
    log_api_request(api_logger, "POST", "/admin/transfer", {"order_id": order_id})
    return await release_payout(_load_order(order_id))


@safe_handler(default_detail="Could not list shipments")
async def admin_list_shipments_handler(limit: int) -> dict:
    log_api_request(api_logger, "GET", "/admin/shipments", {"limit": limit})
    shipments = list_shipments(limit=max(1, min(limit, 200)))
    return {"shipments": shipments, "count": len(shipments)}
