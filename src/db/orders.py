from typing import Iterable, Optional

from src.models.order import ListingStatus, OrderStatus
from src.utils import clock
from src.utils.logger import supabase_logger as sb_logger
from src.utils.supabase import (
    supabase_get_listing,
    supabase_get_order,
    supabase_get_profile,
    supabase_get_row,
    supabase_get_rows,
    supabase_get_shipment,
    supabase_mutate,
    supabase_mutate_listing,
    supabase_mutate_order,
    supabase_mutate_shipment,
)


# -------------------------
# Orders
# -------------------------
def get_order(order_id: str) -> Optional[dict]:
    if not order_id:
        return None
    return supabase_get_order({"id": order_id})


def list_orders(status: Optional[str] = None, limit: int = 50) -> list[dict]:
    return supabase_get_rows(
        "orders", {"status": status}, order_by="created_at", limit=limit
    )


def insert_order_if_absent(order: dict) -> bool:
    """
    Insert an order row unless one with the same id already exists.

    Args:
        order: Full order row; ``id`` is the conflict key

    Returns:
        bool: True when this call created the row, False for a duplicate

    Raises:
        InternalError: If the datastore write fails
    """
    rows = supabase_mutate_order(
        "upsert", order, on_conflict="id", ignore_duplicates=True
    )
    if rows:
        sb_logger.info(f"✅ Created order record: {order.get('id')}")
        return True
    sb_logger.info(f"⏭️ Order already recorded, skipping insert: {order.get('id')}")
    return False


def update_order_status(
    order_id: str,
    target: OrderStatus,
    expected: Iterable[OrderStatus],
    fields: Optional[dict] = None,
) -> Optional[dict]:
    """
    Move an order to ``target`` only while it is still in one of ``expected``.

    The status condition is part of the update filter, so two concurrent
    writers cannot both apply a transition from the same state.

    Args:
        order_id: Order id
        target: New status
        expected: Statuses the order must currently be in
        fields: Extra columns to write with the status (timestamps etc.)

    Returns:
        dict | None: The updated row, or None when the condition did not match
    """
    payload = {"status": target.value, "updated_at": clock.iso()}
    payload.update(fields or {})
    rows = supabase_mutate_order(
        "update",
        payload,
        {"id": order_id, "status": {"in": [s.value for s in expected]}},
    )
    return rows[0] if rows else None


def update_order_fields(order_id: str, fields: dict) -> Optional[dict]:
    payload = dict(fields)
    payload["updated_at"] = clock.iso()
    rows = supabase_mutate_order("update", payload, {"id": order_id})
    return rows[0] if rows else None


# -------------------------
# Listings
# -------------------------
def get_listing(listing_id: str) -> Optional[dict]:
    if not listing_id:
        return None
    return supabase_get_listing({"id": listing_id})


def claim_listing(listing_id: str, order_id: str) -> bool:
    """
    Flip a listing to SOLD for ``order_id`` unless it is already SOLD.

    Returns:
        bool: True when this order won the listing
    """
    rows = supabase_mutate_listing(
        "update",
        {
            "status": ListingStatus.SOLD.value,
            "sold_at": clock.iso(),
            "order_id": order_id,
            "cart_hold_at": None,
            "cart_hold_user_id": None,
            "updated_at": clock.iso(),
        },
        {"id": listing_id, "status": {"neq": ListingStatus.SOLD.value}},
    )
    return bool(rows)


def reopen_listing(listing_id: str, order_id: Optional[str] = None) -> bool:
    """
    Put a SOLD listing back on sale, unless it has since been sold to another order.

    The write only applies while the listing is still SOLD to the owner just read.
    """
    listing = get_listing(listing_id)
    if not listing:
        return False
    owner = listing.get("order_id")
    if order_id and owner and owner != order_id:
        sb_logger.warning(
            f"⚠️ Listing {listing_id} belongs to order {owner}, not reopening for {order_id}"
        )
        return False
    rows = supabase_mutate_listing(
        "update",
        {
            "status": ListingStatus.ACTIVE.value,
            "sold_at": None,
            "order_id": None,
            "cart_hold_at": None,
            "cart_hold_user_id": None,
            "updated_at": clock.iso(),
        },
        {
            "id": listing_id,
            "status": ListingStatus.SOLD.value,
            "order_id": owner if owner else {"is": "null"},
        },
    )
    return bool(rows)


def hold_listing(listing_id: str, user_id: str) -> bool:
    """ACTIVE -> IN_CART for ``user_id``; refreshes the hold if the user already has it."""
    now = clock.iso()
    payload = {
        "status": ListingStatus.IN_CART.value,
        "cart_hold_at": now,
        "cart_hold_user_id": user_id,
        "updated_at": now,
    }
    rows = supabase_mutate_listing(
        "update", payload, {"id": listing_id, "status": ListingStatus.ACTIVE.value}
    )
    if rows:
        return True
    rows = supabase_mutate_listing(
        "update",
        payload,
        {
            "id": listing_id,
            "status": ListingStatus.IN_CART.value,
            "cart_hold_user_id": user_id,
        },
    )
    return bool(rows)


def release_listing(listing_id: str, user_id: Optional[str] = None) -> bool:
    rows = supabase_mutate_listing(
        "update",
        {
            "status": ListingStatus.ACTIVE.value,
            "cart_hold_at": None,
            "cart_hold_user_id": None,
            "updated_at": clock.iso(),
        },
        {
            "id": listing_id,
            "status": ListingStatus.IN_CART.value,
            "cart_hold_user_id": user_id,
        },
    )
    return bool(rows)


def release_stale_holds(cutoff_iso: str) -> list[dict]:
    return supabase_mutate_listing(
        "update",
        {
            "status": ListingStatus.ACTIVE.value,
            "cart_hold_at": None,
            "cart_hold_user_id": None,
            "updated_at": clock.iso(),
        },
        {"status": ListingStatus.IN_CART.value, "cart_hold_at": {"lt": cutoff_iso}},
    )


# -------------------------
# Shipments
# -------------------------
def get_shipment(order_id: str) -> Optional[dict]:
    return supabase_get_shipment({"order_id": order_id})


def get_shipment_by_transaction(transaction_id: str) -> Optional[dict]:
    if not transaction_id:
        return None
    return supabase_get_shipment({"transaction_id": transaction_id})


def list_shipments(limit: int = 50) -> list[dict]:
    return supabase_get_rows("order_shipments", order_by="updated_at", limit=limit)


def upsert_shipment(order_id: str, fields: dict) -> Optional[dict]:
    payload = {k: v for k, v in fields.items() if v is not None}
    payload["order_id"] = order_id
    payload["updated_at"] = clock.iso()
    rows = supabase_mutate_shipment("upsert", payload, on_conflict="order_id")
    return rows[0] if rows else None


# -------------------------
# Checkout session index
# -------------------------
def save_checkout_session(
    order_id: str,
    session_id: str,
    buyer_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> None:
    supabase_mutate(
        "checkout_sessions",
        "upsert",
        {
            "order_id": order_id,
            "stripe_session_id": session_id,
            "buyer_id": buyer_id,
            "idempotency_key": idempotency_key,
            "created_at": clock.iso(),
        },
        on_conflict="order_id",
    )


def get_checkout_session(order_id: str) -> Optional[dict]:
    return supabase_get_row("checkout_sessions", {"order_id": order_id})


# -------------------------
# Notifications
# -------------------------
def insert_notification(
    user_id: str, kind: str, title: str, body: str, href: Optional[str]
) -> Optional[dict]:
    rows = supabase_mutate(
        "notifications",
        "insert",
        {
            "user_id": user_id,
            "kind": kind,
            "title": title,
            "body": body,
            "href": href,
            "is_read": False,
            "created_at": clock.iso(),
        },
    )
    return rows[0] if rows else None


# -------------------------
# Profiles
# -------------------------
def get_profile(user_id: str) -> Optional[dict]:
    if not user_id:
        return None
    return supabase_get_profile({"id": user_id})


def mark_connect_account_verified(account_id: str) -> bool:
    """Flag the seller profile owning a Stripe Connect account as payout ready."""
    profile = supabase_get_profile({"stripe_account_id": account_id})
    if not profile:
        sb_logger.info(f"No profile found for Stripe account {account_id}")
        return False
    if profile.get("stripe_connect_verified") and profile.get("payouts_enabled"):
        return False
    rows = supabase_mutate(
        "profiles",
        "update",
        {
            "stripe_connect_verified": True,
            "payouts_enabled": True,
            "updated_at": clock.iso(),
        },
        {"id": profile["id"]},
    )
    return bool(rows)
