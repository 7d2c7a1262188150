"""
Server Cart Service - The Cart Record Store
===========================================
Authoritative per-user cart. Lines carry a price/name/image snapshot taken
when they are added. Stock is checked when a line is added or changed,
never reserved: on read, lines whose product is gone, unlisted or out of
stock are dropped.

A user without a cart reads an empty one; the record is created on the
first mutation.
"""

from typing import Optional

import structlog

from config import Settings
from errors import (
    CartItemNotFoundError,
    CartNotFoundError,
    InsufficientStockError,
    ProductNotFoundError,
    ValidationError,
)
from schemas.base import utcnow
from schemas.carts import Cart, CartItem, SyncLine
from schemas.products import ListingStatus, Product
from storage.base import Storage

logger = structlog.get_logger().bind(component="cart_service")


class CartService:
    """Cart operations for one authenticated user at a time"""

    def __init__(self, storage: Storage, settings: Settings):
        self.storage = storage
        self.max_quantity = settings.cart_max_line_quantity
        self.placeholder_image = settings.cart_placeholder_image

    def _snapshot(self, product: Product, quantity: int) -> CartItem:
        return CartItem(
            product_id=product.id,
            quantity=quantity,
            price=product.price,
            name=product.name,
            image=product.display_image(self.placeholder_image),
        )

    async def _active_product(self, product_id: Optional[str], message: str) -> Product:
        if not product_id:
            raise ValidationError("Invalid product ID", {"productId": product_id})
        product = await self.storage.products.get(product_id)
        if product is None or product.status != ListingStatus.ACTIVE:
            raise ProductNotFoundError(product_id, message)
        return product

    async def _save(self, cart: Cart) -> Cart:
        cart = cart.model_copy(update={"updated_at": utcnow()})
        return await self.storage.carts.save(cart)

    async def _require_cart(self, user_id: str) -> Cart:
        cart = await self.storage.carts.get(user_id)
        if cart is None:
            raise CartNotFoundError(user_id)
        return cart

    # =========================================================================
    # READ
    # =========================================================================

    async def get_cart(self, user_id: str) -> Cart:
        cart = await self.storage.carts.get(user_id)
        if cart is None:
            return Cart(user_id=user_id)

        products = await self.storage.products.get_many([item.product_id for item in cart.items])
        valid = [
            item for item in cart.items
            if (product := products.get(item.product_id)) is not None and product.is_sellable
        ]
        if len(valid) != len(cart.items):
            logger.info("cart_items_pruned",
                        user_id=user_id, removed=len(cart.items) - len(valid))
            cart = await self._save(cart.model_copy(update={"items": valid}))
        return cart

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def add(self, user_id: str, product_id: Optional[str], quantity: int = 1) -> Cart:
        if quantity is None or quantity < 1 or quantity > self.max_quantity:
            raise ValidationError(
                f"Quantity must be between 1 and {self.max_quantity}", {"quantity": quantity}
            )
        product = await self._active_product(product_id, "Product not found or unavailable")

        if product.stock_quantity < quantity:
            raise InsufficientStockError(
                product.id, product.stock_quantity, quantity,
                message=f"Only {product.stock_quantity} items available in stock",
            )

        cart = await self.storage.carts.get(user_id) or Cart(user_id=user_id)
        items = list(cart.items)
        index = cart.index_of(product.id)

        if index > -1:
            new_quantity = items[index].quantity + quantity
            if new_quantity > product.stock_quantity:
                raise InsufficientStockError(
                    product.id, product.stock_quantity, new_quantity,
                    message=f"Cannot add more than {product.stock_quantity} items",
                )
            if new_quantity > self.max_quantity:
                raise ValidationError(
                    f"Cannot add more than {self.max_quantity} of one item",
                    {"quantity": new_quantity},
                )
            items[index] = items[index].model_copy(update={"quantity": new_quantity})
        else:
            items.append(self._snapshot(product, quantity))

        cart = await self._save(cart.model_copy(update={"items": items}))
        logger.info("cart_item_added",
                    user_id=user_id, product_id=product.id, quantity=quantity,
                    total=cart.total, item_count=cart.item_count)
        return cart

    async def update_quantity(self, user_id: str, product_id: str, quantity: Optional[int]) -> Cart:
        if not quantity or quantity < 1:
            raise ValidationError("Quantity must be at least 1", {"quantity": quantity})
        if quantity > self.max_quantity:
            raise ValidationError(
                f"Quantity must be between 1 and {self.max_quantity}", {"quantity": quantity}
            )
        product = await self._active_product(product_id, "Product not found")
        if quantity > product.stock_quantity:
            raise InsufficientStockError(
                product.id, product.stock_quantity, quantity,
                message=f"Only {product.stock_quantity} items available",
            )

        cart = await self._require_cart(user_id)
        index = cart.index_of(product_id)
        if index == -1:
            raise CartItemNotFoundError(product_id)

        items = list(cart.items)
        items[index] = items[index].model_copy(update={"quantity": quantity})
        cart = await self._save(cart.model_copy(update={"items": items}))
        logger.info("cart_item_updated", user_id=user_id, product_id=product_id, quantity=quantity)
        return cart

    async def remove(self, user_id: str, product_id: str) -> Cart:
        cart = await self._require_cart(user_id)
        if cart.index_of(product_id) == -1:
            raise CartItemNotFoundError(product_id)
        items = [item for item in cart.items if item.product_id != product_id]
        cart = await self._save(cart.model_copy(update={"items": items}))
        logger.info("cart_item_removed", user_id=user_id, product_id=product_id)
        return cart

    async def clear(self, user_id: str) -> Cart:
        cart = await self._require_cart(user_id)
        cart = await self._save(cart.model_copy(update={"items": []}))
        logger.info("cart_cleared", user_id=user_id)
        return cart

    async def sync(self, user_id: str, lines: list[SyncLine]) -> Cart:
        """Replace the cart with ``lines``, skipping anything unavailable."""
        products = await self.storage.products.get_many([line.product_id for line in lines])

        items: dict[str, CartItem] = {}
        skipped = 0
        for line in lines:
            product = products.get(line.product_id)
            if (
                product is None
                or product.status != ListingStatus.ACTIVE
                or line.quantity < 1
                or line.quantity > min(product.stock_quantity, self.max_quantity)
                or line.product_id in items
            ):
                skipped += 1
                continue
            items[line.product_id] = self._snapshot(product, line.quantity)

        cart = await self.storage.carts.get(user_id) or Cart(user_id=user_id)
        cart = await self._save(cart.model_copy(update={"items": list(items.values())}))
        logger.info("cart_synced",
                    user_id=user_id, accepted=len(items), skipped=skipped,
                    total=cart.total, item_count=cart.item_count)
        return cart
