"""Vendor order listing: /api/vendor/orders"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.auth import require_vendor
from api.deps import get_order_service
from schemas.users import Actor
from services.order_service import OrderService

router = APIRouter(prefix="/api/vendor", tags=["vendor-orders"])


@router.get("/orders")
async def list_vendor_orders(
    status: Optional[str] = Query(None),
    payment_status: Optional[str] = Query(None, alias="paymentStatus"),
    search: Optional[str] = Query(None),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    page: int = Query(1),
    limit: int = Query(100),
    actor: Actor = Depends(require_vendor),
    service: OrderService = Depends(get_order_service),
):
    """Orders for every product the calling vendor lists."""
    result = await service.list_orders_for_vendor(
        actor,
        status=status,
        payment_status=payment_status,
        search=search,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    return {"success": True, **result.to_json()}
