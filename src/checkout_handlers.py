import os
import hashlib
import json
import uuid
from datetime import timedelta
from typing import Dict, List, Optional

import stripe

from src.db.orders import get_checkout_session, get_order, save_checkout_session
from src.models.api import CheckoutSessionResponse
from src.models.order import CheckoutLineItem, CheckoutRequest, ListingStatus
from src.utils import clock
from src.utils.errors import Conflict, InternalError, UpstreamError, ValidationError
from src.utils.logger import api_logger, log_api_request, log_success
from src.utils.metadata import encode_checkout_metadata
from src.utils.money import assert_usd, price_to_cents
from src.utils.notify import site_url
from src.utils.safe_handler import safe_handler
from src.utils.stripe import stripe_create_checkout_session
from src.utils.supabase import supabase_get_rows


DEFAULT_FEE_RATE = 0.13
CART_HOLD_MINUTES = 15
STRIPE_NAME_LIMIT = 120


def platform_fee_rate() -> float:
    try:
        rate = float(os.environ.get("PLATFORM_FEE_RATE") or DEFAULT_FEE_RATE)
    except ValueError:
        return DEFAULT_FEE_RATE
    return rate if 0 <= rate < 1 else DEFAULT_FEE_RATE


def cart_hold_minutes() -> int:
    try:
        return int(os.environ.get("CART_HOLD_MINUTES") or CART_HOLD_MINUTES)
    except ValueError:
        return CART_HOLD_MINUTES


def new_order_id() -> str:
    return f"HM-{uuid.uuid4().hex[:10].upper()}"


def _unit_cents(item: CheckoutLineItem) -> int:
    if item.unit_amount is not None:
        if item.unit_amount <= 0:
            raise ValidationError(f"Item '{item.name}' has a non-positive price")
        return int(item.unit_amount)
    if item.price is None:
        raise ValidationError(f"Item '{item.name}' has no price")
    return price_to_cents(item.price)


def _validate_path(path: str, field: str) -> str:
    if not path.startswith("/") or path.startswith("//"):
        raise ValidationError(f"{field} must be a site-relative path")
    return path


def compute_seller_splits(
    line_items: List[CheckoutLineItem], unit_cents: List[int], fee_rate: float
) -> Dict[str, int]:
    """Seller account (or seller id) -> cents owed after the platform fee."""
    splits: Dict[str, int] = {}
    for item, cents in zip(line_items, unit_cents):
        payee = item.seller_account_id or item.seller_id
        if not payee:
            continue
        line_total = cents * item.quantity
        owed = line_total - int(line_total * fee_rate)
        splits[payee] = splits.get(payee, 0) + owed
    return splits


def _parse_sellers_json(raw) -> Optional[Dict[str, int]]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            raise ValidationError("sellers_json is not valid JSON")
    if not isinstance(raw, dict):
        raise ValidationError("sellers_json must be an object")
    try:
        return {str(k): int(v) for k, v in raw.items()}
    except (TypeError, ValueError):
        raise ValidationError("sellers_json amounts must be integer cents")


def _check_availability(line_items: List[CheckoutLineItem], buyer_id: Optional[str]):
    listing_ids = [i.listing_id for i in line_items if i.listing_id]
    if not listing_ids:
        return

    listings = supabase_get_rows(
        "listings",
        {"id": {"in": listing_ids}},
        columns="id, status, title, cart_hold_at, cart_hold_user_id",
    )
    found = {row["id"]: row for row in listings}
    missing = [lid for lid in listing_ids if lid not in found]
    if missing:
        raise ValidationError(f"Listings not found: {', '.join(missing)}")

    hold_cutoff = clock.utcnow() - timedelta(minutes=cart_hold_minutes())
    for lid in listing_ids:
        row = found[lid]
        status = (row.get("status") or "").upper()
        if status == ListingStatus.SOLD.value:
            raise Conflict(
                f"'{row.get('title') or lid}' is no longer available",
                code="listing_unavailable",
            )
        if status == ListingStatus.IN_CART.value:
            holder = row.get("cart_hold_user_id")
            held_at = clock.parse_ts(row.get("cart_hold_at"))
            fresh = held_at is not None and held_at > hold_cutoff
            if fresh and holder and holder != buyer_id:
                raise Conflict(
                    f"'{row.get('title') or lid}' is in another buyer's cart",
                    code="listing_unavailable",
                )


def _check_seller_vacation(line_items: List[CheckoutLineItem]):
    seller_ids = sorted({i.seller_id for i in line_items if i.seller_id})
    if not seller_ids:
        return
    sellers = supabase_get_rows(
        "profiles", {"id": {"in": seller_ids}}, columns="id, vacation_mode, store_name"
    )
    away = [s for s in sellers if s.get("vacation_mode") is True]
    if away:
        names = ", ".join(s.get("store_name") or "This seller" for s in away)
        raise Conflict(f"{names} is currently on vacation", code="seller_on_vacation")


def _idempotency_key(order_id: str, metadata: Dict[str, str]) -> str:
    digest = hashlib.sha256(
        json.dumps(metadata, sort_keys=True).encode("utf-8")
    ).hexdigest()
    return f"checkout:{order_id}:{digest[:16]}"


def _check_order_id_free(order_id: str, idempotency_key: str):
    """An order id may only be reused to retry the exact same checkout."""
    if get_order(order_id):
        raise Conflict(f"Order {order_id} already exists", code="order_exists")
    indexed = get_checkout_session(order_id)
    if indexed and indexed.get("idempotency_key") not in (None, idempotency_key):
        raise Conflict(
            f"Order {order_id} belongs to another checkout", code="order_exists"
        )


# ===============================================================
# /checkout/session
# ===============================================================
@safe_handler(default_detail="Checkout failed")
async def create_checkout_session_handler(
    payload: CheckoutRequest,
) -> CheckoutSessionResponse:
    log_api_request(
        api_logger,
        "POST",
        "/checkout/session",
        {"order_id": payload.order_id, "items": len(payload.line_items)},
    )

    # -------------------------
    # Validate cart before any external call
    # -------------------------
    if not payload.line_items:
        raise ValidationError("Cart is empty")
    for item in payload.line_items:
        if item.quantity < 1:
            raise ValidationError(f"Item '{item.name}' has a non-positive quantity")
    unit_cents = [_unit_cents(item) for item in payload.line_items]
    if payload.shipping_cents < 0:
        raise ValidationError("shipping_cents must be >= 0")
    success_path = _validate_path(payload.success_path, "success_path")
    cancel_path = _validate_path(payload.cancel_path, "cancel_path")
    currency = assert_usd()

    # -------------------------
    # Encode metadata
    # -------------------------
    order_id = payload.order_id or new_order_id()
    subtotal = sum(c * i.quantity for c, i in zip(unit_cents, payload.line_items))
    sellers = _parse_sellers_json(payload.sellers_json)
    if sellers is None:
        sellers = compute_seller_splits(
            payload.line_items, unit_cents, platform_fee_rate()
        )

    metadata = encode_checkout_metadata(
        order_id=order_id,
        line_items=payload.line_items,
        sellers=sellers,
        subtotal_cents=subtotal,
        shipping_cents=payload.shipping_cents,
        currency=currency,
        buyer_id=payload.buyer_id,
        buyer_email=payload.customer_email,
    )

    idempotency_key = _idempotency_key(order_id, metadata)
    _check_order_id_free(order_id, idempotency_key)
    _check_availability(payload.line_items, payload.buyer_id)
    _check_seller_vacation(payload.line_items)

    # -------------------------
    # Create Stripe session
    # -------------------------
    origin = site_url()
    sep = "&" if "?" in success_path else "?"
    params = {
        "mode": "payment",
        "line_items": [
            {
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": item.name[:STRIPE_NAME_LIMIT]},
                    "unit_amount": cents,
                },
                "quantity": item.quantity,
            }
            for item, cents in zip(payload.line_items, unit_cents)
        ],
        "metadata": metadata,
        "payment_intent_data": {"metadata": {"order_id": order_id}},
        "success_url": f"{origin}{success_path}{sep}session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{origin}{cancel_path}",
    }
    if payload.shipping_cents > 0:
        params["shipping_options"] = [
            {
                "shipping_rate_data": {
                    "type": "fixed_amount",
                    "display_name": "Shipping",
                    "fixed_amount": {
                        "amount": payload.shipping_cents,
                        "currency": currency,
                    },
                }
            }
        ]
    if payload.customer_email:
        params["customer_email"] = payload.customer_email
    if payload.buyer_id:
        params["client_reference_id"] = payload.buyer_id

    try:
        session = stripe_create_checkout_session(params, idempotency_key)
    except stripe.StripeError as e:
        api_logger.error(f"❌ Stripe rejected checkout session for {order_id}: {e}")
        raise UpstreamError("Payment provider unavailable, please try again")

    # -------------------------
    # Index order -> session for admin lookups
    # -------------------------
    try:
        save_checkout_session(
            order_id, session["id"], payload.buyer_id, idempotency_key
        )
    except Exception as e:
        api_logger.error(f"❌ Failed to index checkout session {session['id']}: {e}")
        raise InternalError("Could not record checkout session")

    log_success(api_logger, f"Checkout session {session['id']} for order {order_id}")
    return CheckoutSessionResponse(
        id=session["id"], url=session.get("url"), order_id=order_id
    )
