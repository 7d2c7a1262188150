"""Purchaser order views and actions: /api/user/orders"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.auth import get_current_actor
from api.deps import get_order_service, get_state_machine
from schemas.orders import CancelOrderRequest, RefundOrderRequest
from schemas.users import Actor
from services.order_service import OrderService
from services.order_state_machine import OrderStateMachine, allowed_targets

router = APIRouter(prefix="/api/user/orders", tags=["user-orders"])


@router.get("")
async def list_my_orders(
    status: Optional[str] = Query(None),
    payment_status: Optional[str] = Query(None, alias="paymentStatus"),
    page: int = Query(1),
    limit: int = Query(10),
    actor: Actor = Depends(get_current_actor),
    service: OrderService = Depends(get_order_service),
):
    result = await service.list_orders_for_user(
        actor, status=status, payment_status=payment_status, page=page, limit=limit
    )
    return {"success": True, **result.to_json()}


@router.get("/{order_id}")
async def get_my_order(
    order_id: str,
    actor: Actor = Depends(get_current_actor),
    service: OrderService = Depends(get_order_service),
):
    order = await service.get_order(order_id, actor)
    return {
        "success": True,
        "order": order.to_json(),
        "allowedActions": sorted(status.value for status in allowed_targets(order, actor)),
    }


@router.put("/{order_id}/cancel")
async def cancel_my_order(
    order_id: str,
    payload: Optional[CancelOrderRequest] = None,
    actor: Actor = Depends(get_current_actor),
    machine: OrderStateMachine = Depends(get_state_machine),
):
    reason = payload.reason if payload else None
    order = await machine.cancel(order_id, actor, reason=reason)
    return {"success": True, "message": "Order cancelled successfully", "order": order.to_json()}


@router.put("/{order_id}/refund")
async def request_refund(
    order_id: str,
    payload: Optional[RefundOrderRequest] = None,
    actor: Actor = Depends(get_current_actor),
    machine: OrderStateMachine = Depends(get_state_machine),
):
    reason = payload.reason if payload else None
    order = await machine.refund(order_id, actor, reason=reason)
    return {"success": True, "message": "Refund processed successfully", "order": order.to_json()}
