"""
Order lifecycle enums, legal transition tables and request payloads.
"""

from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Union

from pydantic import BaseModel, Field, field_validator


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    COMPLETE = "COMPLETE"
    CANCELED = "CANCELED"
    REFUNDED = "REFUNDED"


class ListingStatus(str, Enum):
    ACTIVE = "ACTIVE"
    IN_CART = "IN_CART"
    SOLD = "SOLD"


class ShipmentStatus(str, Enum):
    CREATED = "CREATED"
    PURCHASED = "PURCHASED"
    TRACKING = "TRACKING"
    DELIVERED = "DELIVERED"
    ERROR = "ERROR"


ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELED}),
    OrderStatus.PAID: frozenset(
        {
            OrderStatus.PROCESSING,
            OrderStatus.SHIPPED,
            OrderStatus.DELIVERED,
            OrderStatus.COMPLETE,
            OrderStatus.CANCELED,
            OrderStatus.REFUNDED,
        }
    ),
    OrderStatus.PROCESSING: frozenset(
        {
            OrderStatus.SHIPPED,
            OrderStatus.DELIVERED,
            OrderStatus.COMPLETE,
            OrderStatus.REFUNDED,
        }
    ),
    OrderStatus.SHIPPED: frozenset(
        {OrderStatus.DELIVERED, OrderStatus.COMPLETE, OrderStatus.REFUNDED}
    ),
    OrderStatus.DELIVERED: frozenset({OrderStatus.COMPLETE, OrderStatus.REFUNDED}),
    OrderStatus.COMPLETE: frozenset(),
    OrderStatus.CANCELED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

# Statuses at which the parcel is with the carrier or beyond
SHIPPED_OR_LATER: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.COMPLETE}
)

SHIPMENT_RANK: Dict[ShipmentStatus, int] = {
    ShipmentStatus.CREATED: 0,
    ShipmentStatus.PURCHASED: 1,
    ShipmentStatus.TRACKING: 2,
    ShipmentStatus.DELIVERED: 3,
}

_LEGACY_ORDER_STATUS = {
    "CANCELLED": OrderStatus.CANCELED,
    "COMPLETED": OrderStatus.COMPLETE,
    "AWAITING_SHIPMENT": OrderStatus.PAID,
}


def parse_order_status(value: Optional[str]) -> Optional[OrderStatus]:
    """Normalize stored status spellings ("paid", "CANCELLED") to OrderStatus."""
    if not value:
        return None
    key = str(value).strip().upper()
    if key in _LEGACY_ORDER_STATUS:
        return _LEGACY_ORDER_STATUS[key]
    try:
        return OrderStatus(key)
    except ValueError:
        return None


def can_transition(current: Optional[OrderStatus], target: OrderStatus) -> bool:
    if current is None:
        return False
    return target in ORDER_TRANSITIONS.get(current, frozenset())


def parse_shipment_status(value: Optional[str]) -> Optional[ShipmentStatus]:
    if not value:
        return None
    try:
        return ShipmentStatus(str(value).strip().upper())
    except ValueError:
        return None


def can_advance_shipment(
    current: Optional[ShipmentStatus], target: ShipmentStatus
) -> bool:
    """
    Shipment status only moves forward. ERROR can be entered from any state
    but DELIVERED, and a shipment in ERROR can be revived by a later tracking event.
    """
    if current is None:
        return True
    if current == target or current == ShipmentStatus.DELIVERED:
        return False
    if target == ShipmentStatus.ERROR or current == ShipmentStatus.ERROR:
        return True
    return SHIPMENT_RANK[target] > SHIPMENT_RANK[current]


# ===============================================================
# request payloads
# ===============================================================
class CheckoutLineItem(BaseModel):
    name: str = Field(..., description="Display name shown on the Stripe page")
    quantity: int = Field(1, description="Units, must be >= 1")
    unit_amount: Optional[int] = Field(None, description="Unit price in cents")
    price: Optional[Union[str, float]] = Field(
        None, description="Display price, e.g. '24.99', used when unit_amount is absent"
    )
    listing_id: Optional[str] = None
    seller_id: Optional[str] = None
    seller_account_id: Optional[str] = Field(
        None, description="Stripe Connect account that receives this line's split"
    )


class CheckoutRequest(BaseModel):
    order_id: Optional[str] = Field(None, alias="orderId")
    buyer_id: Optional[str] = None
    customer_email: Optional[str] = None
    line_items: List[CheckoutLineItem] = Field(default_factory=list)
    shipping_cents: int = 0
    sellers_json: Optional[Union[str, Dict[str, int]]] = Field(
        None, description="Optional precomputed seller account -> cents map"
    )
    success_path: str = "/success.html"
    cancel_path: str = "/checkout.html?canceled=1"

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "orderId": "HM-5F2A9C11D0",
                "buyer_id": "8b9d1c1e-0f55-4f3a-9d0b-3c1a2b7e6f10",
                "customer_email": "buyer@example.com",
                "line_items": [
                    {
                        "name": "Silk charmeuse, 3 yards",
                        "quantity": 1,
                        "unit_amount": 2500,
                        "listing_id": "lst_123",
                        "seller_id": "usr_456",
                    }
                ],
                "shipping_cents": 500,
            }
        }


class CancelOrderRequest(BaseModel):
    order_id: str
    buyer_id: str


class MarkSoldRequest(BaseModel):
    order_id: str
    listing_id: str
    buyer_id: str
    seller_id: str
    buyer_email: Optional[str] = None
    listing_name: Optional[str] = None
    payment_intent: Optional[str] = None
    total_cents: Optional[int] = None
    shipping_cents: int = 0


class CartHoldRequest(BaseModel):
    listing_id: str
    user_id: str


class CartReleaseRequest(BaseModel):
    listing_id: str
    user_id: Optional[str] = None


class NotificationRequest(BaseModel):
    user_id: str
    kind: str = "system"
    title: str
    body: str = ""
    href: Optional[str] = None

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("title must not be blank")
        return v


class OrderStatusUpdate(BaseModel):
    status: str


class AdminRefundRequest(BaseModel):
    order_id: str
    amount_cents: Optional[int] = Field(
        None, description="Partial refund in cents; omit for a full refund"
    )


class AdminTransferRequest(BaseModel):
    order_id: str
