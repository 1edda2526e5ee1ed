"""
Checkout session metadata codec.

Stripe metadata is a flat string map (at most 50 keys, 500 characters per
value). The cart snapshot and the seller split map are stored as compact JSON,
split across at most 20 numbered keys when they outgrow a single value:

    items_json_chunks = "2"
    items_json_0      = '[{"name":"Silk Charmeuse","quantity":1},...'
    items_json_1      = '...]'

Decoding joins the chunks back, so for any valid cart
``decode_checkout_metadata(encode_checkout_metadata(...))["items"]`` equals
``reduce_cart(cart)``.
"""

import json
from typing import Any, Dict, Iterable, List, Optional

from src.utils.errors import ValidationError

METADATA_VALUE_LIMIT = 500
METADATA_MAX_KEYS = 50
MAX_CHUNKS = 20
ITEM_NAME_LIMIT = 40

ITEMS_KEY = "items_json"
SELLERS_KEY = "sellers_json"


def _compact(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def reduce_cart(line_items: Iterable[Any]) -> List[Dict[str, Any]]:
    """Snapshot of a cart as ``[{name, quantity}]`` with bounded names."""
    reduced = []
    for item in line_items:
        name = str(_get(item, "name") or "Item")[:ITEM_NAME_LIMIT]
        reduced.append({"name": name, "quantity": int(_get(item, "quantity") or 1)})
    return reduced


def _chunk(prefix: str, value: str) -> Dict[str, str]:
    chunks = [
        value[i : i + METADATA_VALUE_LIMIT]
        for i in range(0, len(value), METADATA_VALUE_LIMIT)
    ] or [""]
    if len(chunks) > MAX_CHUNKS:
        raise ValidationError("Cart is too large for checkout")
    out = {f"{prefix}_chunks": str(len(chunks))}
    for idx, chunk in enumerate(chunks):
        out[f"{prefix}_{idx}"] = chunk
    return out


def _unchunk(metadata: Dict[str, Any], prefix: str) -> Optional[str]:
    count = metadata.get(f"{prefix}_chunks")
    if count in (None, ""):
        # single-key layout written by older checkout pages
        legacy = metadata.get(prefix)
        return legacy if legacy else None
    try:
        n = int(count)
    except (TypeError, ValueError):
        return None
    return "".join(str(metadata.get(f"{prefix}_{i}") or "") for i in range(n))


def encode_checkout_metadata(
    order_id: str,
    line_items: List[Any],
    sellers: Dict[str, int],
    subtotal_cents: int,
    shipping_cents: int,
    currency: str = "usd",
    buyer_id: Optional[str] = None,
    buyer_email: Optional[str] = None,
) -> Dict[str, str]:
    """
    Build the Stripe metadata map for a checkout session.

    The first line item's listing and seller are promoted to top level keys;
    the order references that listing only.

    Raises:
        ValidationError: cart is empty or the encoded map exceeds Stripe limits
    """
    if not line_items:
        raise ValidationError("Cart is empty")

    first = line_items[0]
    metadata: Dict[str, str] = {
        "order_id": order_id,
        "subtotal_cents": str(int(subtotal_cents)),
        "shipping_cents": str(int(shipping_cents)),
        "currency": currency,
        "item_count": str(len(line_items)),
    }
    if buyer_id:
        metadata["buyer_id"] = str(buyer_id)
    if buyer_email:
        metadata["buyer_email"] = str(buyer_email)
    if _get(first, "listing_id"):
        metadata["listing_id"] = str(_get(first, "listing_id"))
    if _get(first, "seller_id"):
        metadata["seller_id"] = str(_get(first, "seller_id"))
    if _get(first, "name"):
        metadata["title"] = str(_get(first, "name"))[:METADATA_VALUE_LIMIT]

    metadata.update(_chunk(ITEMS_KEY, _compact(reduce_cart(line_items))))
    metadata.update(_chunk(SELLERS_KEY, _compact(sellers or {})))

    if len(metadata) > METADATA_MAX_KEYS:
        raise ValidationError("Cart is too large for checkout")
    return metadata


def decode_checkout_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Inverse of ``encode_checkout_metadata``.

    Missing or malformed JSON decodes to an empty list/map rather than failing,
    since this runs inside the webhook where the event must still be acked.
    """
    metadata = dict(metadata or {})

    def _json(prefix: str, default):
        raw = _unchunk(metadata, prefix)
        if not raw:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            return default

    def _int(key: str) -> int:
        try:
            return int(metadata.get(key) or 0)
        except (TypeError, ValueError):
            return 0

    items = _json(ITEMS_KEY, [])
    sellers = _json(SELLERS_KEY, {})

    return {
        "order_id": metadata.get("order_id") or None,
        "buyer_id": metadata.get("buyer_id") or None,
        "buyer_email": metadata.get("buyer_email") or None,
        "listing_id": metadata.get("listing_id") or None,
        "seller_id": metadata.get("seller_id") or None,
        "title": metadata.get("title") or None,
        "currency": metadata.get("currency") or "usd",
        "subtotal_cents": _int("subtotal_cents"),
        "shipping_cents": _int("shipping_cents"),
        "items": items if isinstance(items, list) else [],
        "sellers": sellers if isinstance(sellers, dict) else {},
    }


def resolve_field(*candidates: Any) -> Optional[Any]:
    """First candidate that is not None and not a blank string."""
    for value in candidates:
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def resolve_buyer_id(session: Dict[str, Any]) -> Optional[str]:
    metadata = session.get("metadata") or {}
    return resolve_field(metadata.get("buyer_id"), session.get("client_reference_id"))


def resolve_buyer_email(session: Dict[str, Any]) -> Optional[str]:
    metadata = session.get("metadata") or {}
    details = session.get("customer_details") or {}
    return resolve_field(
        metadata.get("buyer_email"),
        details.get("email"),
        session.get("customer_email"),
    )
