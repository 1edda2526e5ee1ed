from fastapi import APIRouter, Depends, Request

from src.checkout_handlers import create_checkout_session_handler
from src.models.api import (
    CancelOrderResponse,
    CancelWindowResponse,
    CheckoutSessionResponse,
    ErrorResponse,
    WebhookAck,
)
from src.models.order import (
    CancelOrderRequest,
    CartHoldRequest,
    CartReleaseRequest,
    CheckoutRequest,
    MarkSoldRequest,
    NotificationRequest,
)
from src.models.shippo import LabelPurchaseRequest, LabelResponse
from src.notify_handlers import create_notification_handler
from src.order_handlers import (
    cancel_order_handler,
    cancel_window_handler,
    cart_hold_handler,
    cart_release_handler,
    mark_sold_handler,
)
from src.shippo_handlers import shippo_label_handler, shippo_webhook_handler
from src.stripe_handlers import stripe_webhook_handler
from src.utils.auth import require_internal
from src.utils.rate_limit import rate_limit

router = APIRouter()

ERRORS = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}


# ===============================================================
# CHECKOUT
# ===============================================================
@router.post(
    "/checkout/session",
    summary="Create a Stripe checkout session for a cart",
    response_model=CheckoutSessionResponse,
    responses=ERRORS,
    dependencies=[Depends(rate_limit)],
)
async def create_checkout_session(payload: CheckoutRequest):
    return await create_checkout_session_handler(payload)


@router.post(
    "/stripe/webhook",
    summary="Stripe webhook (checkout + Connect events)",
    response_model=WebhookAck,
    responses={400: {"model": ErrorResponse}},
)
async def stripe_webhook(request: Request):
    return await stripe_webhook_handler(request)


# ===============================================================
# ORDERS
# ===============================================================
@router.post(
    "/orders/cancel",
    summary="Buyer cancels an order within the cancellation window",
    response_model=CancelOrderResponse,
    responses=ERRORS,
    dependencies=[Depends(rate_limit)],
)
async def cancel_order(payload: CancelOrderRequest):
    return await cancel_order_handler(payload)


@router.get(
    "/orders/{order_id}/cancel-window",
    summary="Cancellation window status for an order",
    response_model=CancelWindowResponse,
    responses={404: {"model": ErrorResponse}},
)
async def cancel_window(order_id: str):
    return await cancel_window_handler(order_id)


@router.post(
    "/orders/mark-sold",
    summary="Record a paid order (server-to-server)",
    dependencies=[Depends(require_internal)],
)
async def mark_sold(payload: MarkSoldRequest):
    return await mark_sold_handler(payload)


# ===============================================================
# CART
# ===============================================================
@router.post("/cart/hold", summary="Hold a listing in the buyer's cart")
async def cart_hold(payload: CartHoldRequest):
    return await cart_hold_handler(payload)


@router.post("/cart/release", summary="Release a cart hold")
async def cart_release(payload: CartReleaseRequest):
    return await cart_release_handler(payload)


# ===============================================================
# SHIPPO
# ===============================================================
@router.post("/shippo/webhook", summary="Shippo transaction and tracking webhook")
async def shippo_webhook(request: Request):
    return await shippo_webhook_handler(request)


@router.post(
    "/shippo/label",
    summary="Seller buys a shipping label for an order",
    response_model=LabelResponse,
    responses=ERRORS,
)
async def shippo_label(payload: LabelPurchaseRequest):
    return await shippo_label_handler(payload)


# ===============================================================
# NOTIFICATIONS
# ===============================================================
@router.post(
    "/notify",
    summary="Create a user notification (server-to-server)",
    dependencies=[Depends(require_internal)],
)
async def notify(payload: NotificationRequest):
    return await create_notification_handler(payload)
