from typing import Optional

from fastapi import APIRouter, Depends, Query

from src.admin_handlers import (
    admin_get_order_handler,
    admin_list_orders_handler,
    admin_list_shipments_handler,
    admin_refund_handler,
    admin_transfer_handler,
    admin_update_status_handler,
)
from src.models.order import AdminRefundRequest, AdminTransferRequest, OrderStatusUpdate
from src.utils.auth import require_admin

router = APIRouter(dependencies=[Depends(require_admin)])


@router.get("/orders", summary="Recent orders, optionally filtered by status")
async def admin_orders(
    status: Optional[str] = Query(None, description="e.g. PAID, SHIPPED"),
    limit: int = Query(50, description="Max rows (1-200)"),
):
    return await admin_list_orders_handler(status, limit)


@router.get("/orders/{order_id}", summary="Order detail with shipment and session")
async def admin_order(order_id: str):
    return await admin_get_order_handler(order_id)


@router.post("/orders/{order_id}/status", summary="Move an order to a new status")
async def admin_order_status(order_id: str, payload: OrderStatusUpdate):
    return await admin_update_status_handler(order_id, payload)


@router.post("/refund", summary="Full or partial refund")
async def admin_refund(payload: AdminRefundRequest):
    return await admin_refund_handler(payload)


@router.post("/transfer", summary="Pay sellers for a delivered order")
async def admin_transfer(payload: AdminTransferRequest):
    return await admin_transfer_handler(payload.order_id)


@router.get("/shipments", summary="Recent shipments")
async def admin_shipments(limit: int = Query(50, description="Max rows (1-200)")):
    return await admin_list_shipments_handler(limit)
