"""Order creation and lookup: /api/orders"""

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from api.auth import get_current_actor, require_vendor_or_admin
from api.deps import get_order_service
from schemas.orders import CreateOrderRequest
from schemas.users import Actor
from services.order_service import OrderService

router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.post("", status_code=201)
async def create_order(
    payload: CreateOrderRequest,
    actor: Actor = Depends(get_current_actor),
    service: OrderService = Depends(get_order_service),
):
    """Create the order for a settled payment session.

    A repeat call for the same pidx answers 409 with the order already on
    file; clients treat that as "already handled".
    """
    result = await service.create_order(
        pidx=payload.pidx,
        transaction_id=payload.transaction_id,
        product_id=payload.product_id,
        quantity=payload.quantity,
        total_amount=payload.total_amount,
        customer_info=payload.customer_info,
        shipping_address=payload.shipping_address,
        purchaser=actor,
    )
    order = result.order.to_json()

    if not result.created:
        return JSONResponse(
            status_code=409,
            content={
                "success": False,
                "error": "Order already exists",
                "error_key": "order_exists",
                "orderId": result.order.id,
                "pidx": result.order.pidx,
                "order": order,
            },
        )

    return {
        "success": True,
        "message": "Order created and stock updated successfully",
        "order": order,
        "stockUpdate": result.stock_update.to_json(),
    }


@router.get("/pidx/{pidx}")
async def get_order_by_pidx(
    pidx: str,
    actor: Actor = Depends(get_current_actor),
    service: OrderService = Depends(get_order_service),
):
    order = await service.get_order_by_pidx(pidx, actor)
    return {"success": True, "order": order.to_json()}


@router.get("/product/{product_id}")
async def get_orders_by_product(
    product_id: str,
    page: int = Query(1),
    limit: int = Query(10),
    actor: Actor = Depends(require_vendor_or_admin),
    service: OrderService = Depends(get_order_service),
):
    result = await service.list_orders_for_product(product_id, actor, page=page, limit=limit)
    return {"success": True, **result.to_json()}
