"""Server cart: /api/cart

Every endpoint answers with the full cart document.
"""

from fastapi import APIRouter, Depends

from api.auth import get_current_actor
from api.deps import get_cart_service
from schemas.carts import AddToCartRequest, SyncCartRequest, UpdateQuantityRequest
from schemas.users import Actor
from services.cart_service import CartService

router = APIRouter(prefix="/api/cart", tags=["cart"])


@router.get("")
async def get_cart(
    actor: Actor = Depends(get_current_actor),
    service: CartService = Depends(get_cart_service),
):
    cart = await service.get_cart(actor.id)
    return cart.to_json()


@router.post("/add")
async def add_to_cart(
    payload: AddToCartRequest,
    actor: Actor = Depends(get_current_actor),
    service: CartService = Depends(get_cart_service),
):
    cart = await service.add(actor.id, payload.product_id, payload.quantity)
    return cart.to_json()


@router.put("/update/{product_id}")
async def update_quantity(
    product_id: str,
    payload: UpdateQuantityRequest,
    actor: Actor = Depends(get_current_actor),
    service: CartService = Depends(get_cart_service),
):
    cart = await service.update_quantity(actor.id, product_id, payload.quantity)
    return cart.to_json()


@router.delete("/remove/{product_id}")
async def remove_from_cart(
    product_id: str,
    actor: Actor = Depends(get_current_actor),
    service: CartService = Depends(get_cart_service),
):
    cart = await service.remove(actor.id, product_id)
    return cart.to_json()


@router.delete("/clear")
async def clear_cart(
    actor: Actor = Depends(get_current_actor),
    service: CartService = Depends(get_cart_service),
):
    cart = await service.clear(actor.id)
    return cart.to_json()


@router.post("/sync")
async def sync_cart(
    payload: SyncCartRequest,
    actor: Actor = Depends(get_current_actor),
    service: CartService = Depends(get_cart_service),
):
    cart = await service.sync(actor.id, payload.items)
    return cart.to_json()
