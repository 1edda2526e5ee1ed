import hmac
import os
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import Request

from src.db.orders import (
    get_order,
    get_shipment,
    get_shipment_by_transaction,
    update_order_status,
    upsert_shipment,
)
from src.models.order import (
    ORDER_TRANSITIONS,
    OrderStatus,
    ShipmentStatus,
    can_advance_shipment,
    parse_order_status,
    parse_shipment_status,
)
from src.models.shippo import LabelPurchaseRequest, LabelResponse
from src.order_handlers import CANCEL_WINDOW_MINUTES
from src.utils import clock
from src.utils.errors import Conflict, Forbidden, NotFound, UpstreamError
from src.utils.logger import log_api_request, log_success, shippo_logger
from src.utils.notify import dispatch_notification, site_url
from src.utils.safe_handler import safe_handler
from src.utils.shippo import get_attr, parse_order_metadata, shippo_purchase_label
from src.utils.supabase import supabase_get_shipment

# transaction.* events report label state
TRANSACTION_STATUS_MAP = {
    "SUCCESS": ShipmentStatus.PURCHASED,
    "QUEUED": ShipmentStatus.CREATED,
    "WAITING": ShipmentStatus.CREATED,
    "ERROR": ShipmentStatus.ERROR,
    "REFUNDED": ShipmentStatus.ERROR,
    "REFUNDPENDING": ShipmentStatus.ERROR,
}

# track_updated events report carrier state
TRACKING_STATUS_MAP = {
    "PRE_TRANSIT": ShipmentStatus.PURCHASED,
    "TRANSIT": ShipmentStatus.TRACKING,
    "DELIVERED": ShipmentStatus.DELIVERED,
    "RETURNED": ShipmentStatus.ERROR,
    "FAILURE": ShipmentStatus.ERROR,
}

# Shipment states that move the order itself forward
ORDER_CASCADE = {
    ShipmentStatus.TRACKING: (OrderStatus.SHIPPED, "shipped_at"),
    ShipmentStatus.DELIVERED: (OrderStatus.DELIVERED, "delivered_at"),
}

SKIPPED = {"ok": True, "skipped": True}


def _sources_for(target: OrderStatus) -> list[OrderStatus]:
    return [s for s, allowed in ORDER_TRANSITIONS.items() if target in allowed]


def _is_track_event(event: str, data: Dict[str, Any]) -> bool:
    return event.startswith("track") or get_attr(data, "object") == "track" or (
        "tracking_status" in data and "status" not in data
    )


def map_shipment_status(event: str, data: Dict[str, Any]) -> Optional[ShipmentStatus]:
    """Translate a Shippo webhook payload into a shipment status (None = no change)."""
    if _is_track_event(event, data):
        tracking = data.get("tracking_status")
        raw = tracking.get("status") if isinstance(tracking, dict) else tracking
        return TRACKING_STATUS_MAP.get(str(raw or "").upper())
    return TRANSACTION_STATUS_MAP.get(str(data.get("status") or "").upper())


def _resolve_order_id(data: Dict[str, Any]) -> Optional[str]:
    order_id = parse_order_metadata(data.get("metadata"))
    if order_id:
        return order_id

    # track payloads carry the label's transaction id under "transaction"
    shipment = get_shipment_by_transaction(data.get("transaction") or data.get("object_id"))
    if not shipment and data.get("tracking_number"):
        shipment = supabase_get_shipment({"tracking_number": data.get("tracking_number")})
    return shipment.get("order_id") if shipment else None


def _secret_ok(request: Request) -> bool:
    expected = os.environ.get("SHIPPO_WEBHOOK_SECRET")
    if not expected:
        return True
    provided = request.query_params.get("secret") or ""
    return hmac.compare_digest(expected.encode(), provided.encode())


async def _cascade_to_order(order: dict, shipment_status: ShipmentStatus, data: dict):
    cascade = ORDER_CASCADE.get(shipment_status)
    if not cascade:
        return
    target, stamp = cascade
    current = parse_order_status(order.get("status"))
    if current not in _sources_for(target):
        shippo_logger.info(
            f"Order {order['id']} is {order.get('status')}, not moving to {target.value}"
        )
        return

    updated = update_order_status(
        order["id"], target, _sources_for(target), {stamp: clock.iso()}
    )
    if not updated:
        return

    tracking_url = data.get("tracking_url_provider") or data.get("tracking_url")
    if target == OrderStatus.SHIPPED:
        await dispatch_notification(
            order.get("buyer_id"),
            "shipment",
            "Your order shipped",
            f"Tracking: {data.get('tracking_number') or 'available soon'}",
            tracking_url or f"{site_url()}/orders.html",
        )
    else:
        await dispatch_notification(
            order.get("buyer_id"),
            "shipment",
            "Your order was delivered",
            "Enjoy your fabric! Let the seller know how it went.",
            f"{site_url()}/orders.html",
        )
        await dispatch_notification(
            order.get("seller_id"),
            "shipment",
            "Order delivered",
            "Your payout will be released in 3 days.",
            f"{site_url()}/sales.html",
        )


# ===============================================================
# /shippo/webhook
# ===============================================================
async def shippo_webhook_handler(request: Request) -> dict:
    if not _secret_ok(request):
        shippo_logger.warning("⚠️ Shippo webhook secret mismatch, ignoring event")
        return SKIPPED

    try:
        body = await request.json()
    except ValueError:
        shippo_logger.warning("⚠️ Shippo webhook body is not JSON, ignoring")
        return SKIPPED
    if not isinstance(body, dict):
        return SKIPPED

    event = str(body.get("event") or body.get("type") or "")
    data = body.get("data") or {}
    log_api_request(
        shippo_logger,
        "POST",
        "/shippo/webhook",
        {"event": event, "object_id": data.get("object_id")},
    )

    try:
        order_id = _resolve_order_id(data)
        order = get_order(order_id) if order_id else None
        if not order:
            shippo_logger.info(f"Shippo event for unknown order {order_id!r}, skipping")
            return SKIPPED

        current = get_shipment(order["id"])
        current_status = parse_shipment_status(current.get("status")) if current else None
        new_status = map_shipment_status(event, data)
        applied = None
        if new_status and can_advance_shipment(current_status, new_status):
            applied = new_status

        fields = {
            "tracking_number": data.get("tracking_number"),
            "tracking_url": data.get("tracking_url_provider") or data.get("tracking_url"),
            "label_url": data.get("label_url"),
            "carrier": data.get("carrier"),
            "status": applied.value if applied else None,
        }
        if not _is_track_event(event, data):
            fields["transaction_id"] = data.get("object_id")
        upsert_shipment(order["id"], fields)

        if applied:
            await _cascade_to_order(order, applied, data)

        final = applied or current_status
        return {
            "ok": True,
            "order_id": order["id"],
            "status": final.value if final else None,
        }
    except Exception as e:
        # Shippo retries on non-2xx; orphaned or failed events are logged instead
        shippo_logger.exception(f"❌ Shippo webhook processing failed: {e}")
        return {"ok": True, "error": "processing_failed"}


# ===============================================================
# /shippo/label
# ===============================================================
@safe_handler(default_detail="Label purchase failed")
async def shippo_label_handler(payload: LabelPurchaseRequest) -> LabelResponse:
    log_api_request(
        shippo_logger,
        "POST",
        "/shippo/label",
        {"order_id": payload.order_id, "seller_id": payload.seller_id},
    )

    # -------------------------
    # Load and check order
    # -------------------------
    order = get_order(payload.order_id)
    if not order:
        raise NotFound("Order not found")
    if order.get("seller_id") != payload.seller_id:
        raise Forbidden("Only the seller can buy a label for this order")

    status = parse_order_status(order.get("status"))
    if status not in (OrderStatus.PAID, OrderStatus.PROCESSING):
        raise Conflict(
            f"Order cannot ship while {order.get('status')}", code="order_not_shippable"
        )

    created = clock.parse_ts(order.get("created_at"))
    if created and clock.utcnow() - created <= timedelta(minutes=CANCEL_WINDOW_MINUTES):
        raise Conflict(
            "The buyer can still cancel; wait for the cancellation window to close",
            code="cancel_window_open",
        )

    # -------------------------
    # Purchase label
    # -------------------------
    try:
        tx = shippo_purchase_label(payload.rate_id, order["id"], payload.label_file_type)
    except Exception as e:
        shippo_logger.error(f"❌ Shippo label purchase failed for {order['id']}: {e}")
        raise UpstreamError("Shipping provider error")

    tx_status = get_attr(tx, "status")
    tx_status = str(getattr(tx_status, "value", tx_status) or "").upper()
    if tx_status != "SUCCESS" or not get_attr(tx, "object_id"):
        messages = get_attr(tx, "messages") or []
        first = messages[0] if messages else None
        shippo_logger.error(
            f"❌ Shippo transaction not successful for {order['id']}: "
            f"{get_attr(first, 'text') if first else tx_status}"
        )
        raise UpstreamError("Label could not be purchased")

    label = LabelResponse(
        order_id=order["id"],
        transaction_id=get_attr(tx, "object_id"),
        status=ShipmentStatus.PURCHASED.value,
        label_url=get_attr(tx, "label_url"),
        tracking_number=get_attr(tx, "tracking_number"),
        tracking_url=get_attr(tx, "tracking_url_provider"),
    )

    upsert_shipment(
        order["id"],
        {
            "transaction_id": label.transaction_id,
            "label_url": label.label_url,
            "tracking_number": label.tracking_number,
            "tracking_url": label.tracking_url,
            "status": label.status,
        },
    )
    update_order_status(
        order["id"], OrderStatus.PROCESSING, [OrderStatus.PAID], {}
    )

    log_success(shippo_logger, f"Label {label.transaction_id} purchased for {order['id']}")
    return label
