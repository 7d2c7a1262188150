"""Admin order management: /api/admin/orders"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.auth import require_admin
from api.deps import get_order_service, get_state_machine
from schemas.orders import (
    AdminCancelRequest,
    AdminNotesRequest,
    AdminPaymentStatusRequest,
    AdminRefundRequest,
    AdminShippingUpdateRequest,
    AdminStatusUpdateRequest,
)
from schemas.users import Actor
from services.order_service import OrderService
from services.order_state_machine import OrderStateMachine, allowed_targets

router = APIRouter(prefix="/api/admin/orders", tags=["admin-orders"])


def _updated(order, message: str) -> dict:
    return {"success": True, "message": message, "order": order.to_json()}


@router.get("")
async def list_orders(
    status: Optional[str] = Query(None),
    payment_status: Optional[str] = Query(None, alias="paymentStatus"),
    search: Optional[str] = Query(None),
    page: int = Query(1),
    limit: int = Query(10),
    actor: Actor = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    result = await service.list_orders(
        status=status, payment_status=payment_status, search=search, page=page, limit=limit
    )
    return {"success": True, **result.to_json()}


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    actor: Actor = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    order = await service.get_order(order_id, actor)
    return {
        "success": True,
        "order": order.to_json(),
        "allowedActions": sorted(status.value for status in allowed_targets(order, actor)),
    }


@router.put("/{order_id}/status")
async def update_status(
    order_id: str,
    payload: AdminStatusUpdateRequest,
    actor: Actor = Depends(require_admin),
    machine: OrderStateMachine = Depends(get_state_machine),
):
    order = await machine.update_status(order_id, payload.status, actor, notes=payload.notes)
    return _updated(order, "Order status updated successfully")


@router.put("/{order_id}/payment-status")
async def update_payment_status(
    order_id: str,
    payload: AdminPaymentStatusRequest,
    actor: Actor = Depends(require_admin),
    machine: OrderStateMachine = Depends(get_state_machine),
):
    order = await machine.set_payment_status(order_id, payload.payment_status, actor)
    return _updated(order, "Payment status updated successfully")


@router.put("/{order_id}/shipping")
async def update_shipping(
    order_id: str,
    payload: AdminShippingUpdateRequest,
    actor: Actor = Depends(require_admin),
    machine: OrderStateMachine = Depends(get_state_machine),
):
    order = await machine.update_shipping(
        order_id,
        actor,
        carrier=payload.carrier,
        tracking_number=payload.tracking_number,
        estimated_delivery=payload.estimated_delivery,
    )
    return _updated(order, "Shipping information updated successfully")


@router.put("/{order_id}/notes")
async def add_notes(
    order_id: str,
    payload: AdminNotesRequest,
    actor: Actor = Depends(require_admin),
    machine: OrderStateMachine = Depends(get_state_machine),
):
    order = await machine.add_notes(order_id, payload.notes, actor)
    return _updated(order, "Notes updated successfully")


@router.put("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    payload: Optional[AdminCancelRequest] = None,
    actor: Actor = Depends(require_admin),
    machine: OrderStateMachine = Depends(get_state_machine),
):
    reason = payload.cancellation_reason if payload else None
    order = await machine.cancel(order_id, actor, reason=reason)
    return _updated(order, "Order cancelled successfully")


@router.put("/{order_id}/refund")
async def refund_order(
    order_id: str,
    payload: Optional[AdminRefundRequest] = None,
    actor: Actor = Depends(require_admin),
    machine: OrderStateMachine = Depends(get_state_machine),
):
    reason = payload.refund_reason if payload else None
    order = await machine.refund(order_id, actor, reason=reason)
    return _updated(order, "Refund processed successfully")
