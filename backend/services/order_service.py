"""
Order Creation Service
======================
Turns a settled payment session into exactly one order and one stock
decrement.

Idempotency is keyed on ``pidx``:
- an order already on file for the pidx is returned as a replay
  (``created=False``); the HTTP layer answers 409 with that order
- two concurrent creators race on the storage-level uniqueness of pidx;
  the loser reads the winner and also returns a replay

The order insert and the conditional stock decrement run in one unit of
work. If the decrement finds too little stock the insert is rolled back.
A storage failure inside the unit of work surfaces as
``OrderPersistenceError``; the write may still have landed, so callers
must fetch by pidx before retrying.
"""

from typing import Optional

import structlog
from pydantic import ValidationError as SchemaValidationError

from config import Settings
from errors import (
    AuthenticationRequiredError,
    InsufficientStockError,
    OrderAccessDeniedError,
    OrderAlreadyExistsError,
    OrderNotFoundError,
    OrderPersistenceError,
    PaymentNotSettledError,
    ProductNotFoundError,
    RoleNotPermittedError,
    StorefrontError,
    ValidationError,
)
from schemas.base import utcnow
from schemas.orders import (
    CustomerInfo,
    Order,
    OrderCreationResult,
    OrderFilter,
    OrderPage,
    OrderStatus,
    OrderTimeline,
    OrderView,
    Pagination,
    PaymentStatus,
    ShippingAddress,
)
from schemas.products import Product, ProductSummary
from schemas.users import Actor, ActorRole
from services.payment_gateway import KhaltiGateway
from storage.base import DuplicateKeyError, Storage

COMPONENT = "order_service"


class _StockExhausted(Exception):
    """Conditional decrement matched no row"""


class OrderService:
    """
    Order creation plus the read side of the order record store.

    Example:
        service = OrderService(storage, settings)
        result = await service.create_order(
            pidx="bZQLD9wRVWo4CdESSfuSsB",
            product_id=product.id,
            quantity=2,
            total_amount=1500.0,
            purchaser=actor,
        )
        if not result.created:
            ...  # already handled, show result.order
    """

    def __init__(
        self,
        storage: Storage,
        settings: Settings,
        gateway: Optional[KhaltiGateway] = None,
    ):
        self.storage = storage
        self.settings = settings
        self.gateway = gateway
        self._log = structlog.get_logger().bind(component=COMPONENT)

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create_order(
        self,
        *,
        pidx: Optional[str],
        product_id: Optional[str],
        quantity: Optional[int],
        total_amount: Optional[float],
        purchaser: Optional[Actor],
        transaction_id: Optional[str] = None,
        customer_info: Optional[CustomerInfo] = None,
        shipping_address: Optional[ShippingAddress] = None,
    ) -> OrderCreationResult:
        self._validate(pidx, product_id, quantity, total_amount)
        if purchaser is None:
            raise AuthenticationRequiredError()

        log = self._log.bind(pidx=pidx, user_id=purchaser.id)
        log.info("order_creation_requested", product_id=product_id, quantity=quantity)

        product = await self.storage.products.get(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)

        existing = await self.storage.orders.get_by_pidx(pidx)
        if existing is not None:
            return await self._replay(existing, product, purchaser, lost_race=False)

        if self.settings.verify_payment_on_order and self.gateway is not None:
            await self._verify_settled(pidx)

        if product.stock_quantity < quantity:
            await self._reject(pidx, product, quantity, product.stock_quantity)

        now = utcnow()
        order = Order(
            pidx=pidx,
            transaction_id=transaction_id,
            product_id=product.id,
            user_id=purchaser.id,
            quantity=quantity,
            total_amount=total_amount,
            customer_info=customer_info or self._customer_from(purchaser),
            shipping_address=shipping_address,
            status=OrderStatus.CONFIRMED,
            payment_status=PaymentStatus.COMPLETED,
            timeline=OrderTimeline(ordered=now, confirmed=now),
            created_at=now,
            updated_at=now,
        )

        try:
            async with self.storage.unit_of_work() as uow:
                await uow.insert_order(order)
                stock_update = await uow.decrement_stock(product.id, quantity)
                if stock_update is None:
                    raise _StockExhausted()
        except DuplicateKeyError:
            winner = await self.storage.orders.get_by_pidx(pidx)
            if winner is None:
                raise OrderPersistenceError(pidx, "duplicate pidx reported but no order found")
            return await self._replay(winner, product, purchaser, lost_race=True)
        except _StockExhausted:
            current = await self.storage.products.get(product.id)
            available = current.stock_quantity if current else 0
            await self._reject(pidx, product, quantity, available)
        except StorefrontError:
            raise
        except Exception as e:
            log.error("order_persistence_failed", error=str(e), error_type=type(e).__name__)
            await self.storage.events.record(
                "ORDER_CREATION_FAILED",
                {"pidx": pidx, "product_id": product.id, "error": str(e)},
                component=COMPONENT,
                severity="ERROR",
            )
            raise OrderPersistenceError(pidx, str(e)) from e

        await self.storage.events.record(
            "ORDER_CREATED",
            {"pidx": pidx, "product_id": product.id, "quantity": quantity,
             "total_amount": total_amount},
            order_id=order.id,
            component=COMPONENT,
        )
        await self.storage.events.record(
            "STOCK_DECREMENTED",
            {"product_id": product.id, "old_stock": stock_update.old_stock,
             "new_stock": stock_update.new_stock},
            order_id=order.id,
            component=COMPONENT,
        )
        if stock_update.delisted:
            await self.storage.events.record(
                "PRODUCT_DELISTED",
                {"product_id": product.id, "product_name": product.name},
                order_id=order.id,
                component=COMPONENT,
            )

        log.info("order_created",
                 order_id=order.id,
                 stock_update=f"{stock_update.old_stock} -> {stock_update.new_stock}",
                 delisted=stock_update.delisted)

        return OrderCreationResult(
            order=OrderView.build(order, ProductSummary.from_product(product)),
            created=True,
            stock_update=stock_update,
        )

    @staticmethod
    def _validate(pidx, product_id, quantity, total_amount):
        fields = {
            "pidx": pidx,
            "productId": product_id,
            "quantity": quantity,
            "totalAmount": total_amount,
        }
        missing = [name for name, value in fields.items() if value is None or value == ""]
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                {"missingFields": missing},
            )
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1", {"quantity": quantity})
        if total_amount < 0:
            raise ValidationError("Total amount cannot be negative", {"totalAmount": total_amount})

    @staticmethod
    def _customer_from(purchaser: Actor) -> CustomerInfo:
        return CustomerInfo(name=purchaser.name or "", email=purchaser.email or "", phone="")

    async def _verify_settled(self, pidx: str):
        status = await self.gateway.lookup(pidx)
        if not status.authorizes_order:
            await self.storage.events.record(
                "ORDER_REJECTED",
                {"pidx": pidx, "reason": "payment_not_settled", "gateway_status": status.status.value},
                component=COMPONENT,
                severity="WARN",
            )
            raise PaymentNotSettledError(pidx, status.status.value)

    async def _reject(self, pidx: str, product: Product, requested: int, available: int):
        await self.storage.events.record(
            "ORDER_REJECTED",
            {"pidx": pidx, "reason": "insufficient_stock", "product_id": product.id,
             "available": available, "requested": requested},
            component=COMPONENT,
            severity="WARN",
        )
        raise InsufficientStockError(
            product.id,
            available,
            requested,
            message=f"Insufficient stock: only {available} available",
            product_name=product.name,
        )

    async def _replay(
        self,
        existing: Order,
        product: Product,
        purchaser: Actor,
        lost_race: bool,
    ) -> OrderCreationResult:
        if not purchaser.is_admin and not purchaser.owns(existing.user_id):
            # Another account's order: confirm it exists without exposing it
            raise OrderAlreadyExistsError(existing.pidx, existing.id)

        await self.storage.events.record(
            "ORDER_REPLAYED",
            {"pidx": existing.pidx, "lost_race": lost_race},
            order_id=existing.id,
            component=COMPONENT,
        )
        return OrderCreationResult(
            order=OrderView.build(existing, ProductSummary.from_product(product)),
            created=False,
        )

    # =========================================================================
    # READS
    # =========================================================================

    async def _view(self, order: Order) -> OrderView:
        product = await self.storage.products.get(order.product_id)
        summary = ProductSummary.from_product(product) if product else None
        return OrderView.build(order, summary)

    async def _views(self, orders: list[Order]) -> list[OrderView]:
        products = await self.storage.products.get_many(list({o.product_id for o in orders}))
        views = []
        for order in orders:
            product = products.get(order.product_id)
            views.append(OrderView.build(order, ProductSummary.from_product(product) if product else None))
        return views

    @staticmethod
    def _check_access(order: Order, actor: Actor):
        if not actor.is_admin and not actor.owns(order.user_id):
            raise OrderAccessDeniedError(order.id)

    async def get_order(self, order_id: str, actor: Actor) -> OrderView:
        order = await self.storage.orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id=order_id)
        self._check_access(order, actor)
        return await self._view(order)

    async def get_order_by_pidx(self, pidx: str, actor: Actor) -> OrderView:
        if not pidx:
            raise ValidationError("pidx parameter is required")
        order = await self.storage.orders.get_by_pidx(pidx)
        if order is None:
            raise OrderNotFoundError(pidx=pidx)
        self._check_access(order, actor)
        return await self._view(order)

    @staticmethod
    def _filter(**kwargs) -> OrderFilter:
        try:
            return OrderFilter(**kwargs)
        except SchemaValidationError as e:
            problems = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise ValidationError("Invalid order filter", {"problems": problems}) from e

    async def _page(self, criteria: OrderFilter) -> OrderPage:
        orders, total = await self.storage.orders.search(criteria)
        return OrderPage(
            orders=await self._views(orders),
            pagination=Pagination.of(criteria.page, criteria.limit, total),
        )

    async def list_orders_for_user(
        self,
        actor: Actor,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> OrderPage:
        criteria = self._filter(
            user_id=actor.id,
            status=status,
            payment_status=payment_status,
            page=page,
            limit=limit,
        )
        return await self._page(criteria)

    async def list_orders_for_product(
        self,
        product_id: str,
        actor: Actor,
        page: int = 1,
        limit: int = 10,
    ) -> OrderPage:
        product = await self.storage.products.get(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        if actor.role == ActorRole.VENDOR and product.vendor_id != actor.id:
            raise OrderAccessDeniedError(product_id)
        return await self._page(self._filter(product_id=product_id, page=page, limit=limit))

    async def list_orders_for_vendor(
        self,
        actor: Actor,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
        search: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        page: int = 1,
        limit: int = 100,
    ) -> OrderPage:
        """Orders across every product the vendor lists, newest first."""
        if actor.role != ActorRole.VENDOR:
            raise RoleNotPermittedError(actor.role.value, [ActorRole.VENDOR.value])
        criteria = self._filter(
            vendor_id=actor.id,
            status=status,
            payment_status=payment_status,
            search=search or None,
            created_from=start_date or None,
            created_to=end_date or None,
            page=page,
            limit=limit,
        )
        self._log.info("vendor_orders_listed", vendor_id=actor.id, page=page)
        return await self._page(criteria)

    async def list_orders(
        self,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> OrderPage:
        """Admin listing across all users."""
        criteria = self._filter(
            status=status,
            payment_status=payment_status,
            search=search or None,
            page=page,
            limit=limit,
        )
        return await self._page(criteria)
