"""
In-memory storage backend.

Used when no DATABASE_URL is configured (local development and tests).
Every write that must be atomic runs without an ``await`` between its
check and its mutation, and all writers share one lock, so a unit of work
is serialized against other writers the same way a PostgreSQL transaction
holding row locks would be.
"""

import asyncio
from typing import Any, Callable, Optional
from uuid import uuid4

import structlog

from schemas.base import utcnow
from schemas.carts import Cart
from schemas.orders import Order, OrderFilter, OrderStatus
from schemas.products import ListingStatus, Product, StockUpdate
from storage.base import (
    DuplicateKeyError,
    ICartRepository,
    IEventLog,
    IOrderRepository,
    IProductRepository,
    IUnitOfWork,
    Storage,
    StoredEvent,
)

logger = structlog.get_logger().bind(component="memory_storage")


class _MemoryState:
    """Tables shared by every repository of one MemoryStorage"""

    def __init__(self):
        self.products: dict[str, Product] = {}
        self.orders: dict[str, Order] = {}
        self.pidx_index: dict[str, str] = {}
        self.carts: dict[str, Cart] = {}
        self.events: list[StoredEvent] = []
        self.write_lock = asyncio.Lock()


def _matches(order: Order, criteria: OrderFilter, products: dict[str, Product]) -> bool:
    if criteria.user_id and order.user_id != criteria.user_id:
        return False
    if criteria.product_id and order.product_id != criteria.product_id:
        return False
    if criteria.vendor_id:
        product = products.get(order.product_id)
        if product is None or product.vendor_id != criteria.vendor_id:
            return False
    if criteria.created_from and order.created_at < criteria.created_from:
        return False
    if criteria.created_to and order.created_at > criteria.created_to:
        return False
    if criteria.status and order.status != criteria.status:
        return False
    if criteria.payment_status and order.payment_status != criteria.payment_status:
        return False
    if criteria.search:
        needle = criteria.search.lower()
        haystack = [
            order.pidx,
            order.transaction_id or "",
            order.customer_info.name,
            order.customer_info.email,
            order.shipping_address.full_name if order.shipping_address else "",
        ]
        if not any(needle in value.lower() for value in haystack):
            return False
    return True


# =============================================================================
# REPOSITORIES
# =============================================================================

class InMemoryProductRepository(IProductRepository):

    def __init__(self, state: _MemoryState):
        self._state = state

    async def get(self, product_id: str) -> Optional[Product]:
        product = self._state.products.get(product_id)
        return product.model_copy(deep=True) if product else None

    async def get_many(self, product_ids: list[str]) -> dict[str, Product]:
        found = {}
        for product_id in product_ids:
            product = self._state.products.get(product_id)
            if product:
                found[product_id] = product.model_copy(deep=True)
        return found

    async def save(self, product: Product) -> Product:
        async with self._state.write_lock:
            self._state.products[product.id] = product.model_copy(deep=True)
            return product


class InMemoryOrderRepository(IOrderRepository):
    """Orders keyed by id, with a unique pidx index"""

    def __init__(self, state: _MemoryState):
        self._state = state

    async def get(self, order_id: str) -> Optional[Order]:
        order = self._state.orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def get_by_pidx(self, pidx: str) -> Optional[Order]:
        order_id = self._state.pidx_index.get(pidx)
        if order_id is None:
            return None
        return await self.get(order_id)

    async def search(self, criteria: OrderFilter) -> tuple[list[Order], int]:
        matching = [
            o for o in self._state.orders.values()
            if _matches(o, criteria, self._state.products)
        ]
        matching.sort(key=lambda o: o.created_at, reverse=True)
        start = (criteria.page - 1) * criteria.limit
        page = matching[start:start + criteria.limit]
        return [o.model_copy(deep=True) for o in page], len(matching)

    async def compare_and_set(self, order: Order, expected_status: OrderStatus) -> bool:
        async with self._state.write_lock:
            current = self._state.orders.get(order.id)
            if current is None or current.status != expected_status:
                return False
            self._state.orders[order.id] = order.model_copy(deep=True)
            return True


class InMemoryCartRepository(ICartRepository):

    def __init__(self, state: _MemoryState):
        self._state = state

    async def get(self, user_id: str) -> Optional[Cart]:
        cart = self._state.carts.get(user_id)
        return cart.model_copy(deep=True) if cart else None

    async def save(self, cart: Cart) -> Cart:
        async with self._state.write_lock:
            self._state.carts[cart.user_id] = cart.model_copy(deep=True)
            return cart


class InMemoryEventLog(IEventLog):
    """Black box kept in a list"""

    def __init__(self, state: _MemoryState):
        self._state = state

    async def record(
        self,
        event_type: str,
        payload: dict[str, Any],
        order_id: Optional[str] = None,
        component: Optional[str] = None,
        severity: str = "INFO",
    ) -> str:
        event = StoredEvent(
            id=str(uuid4()),
            order_id=order_id,
            event_type=event_type,
            component=component,
            payload=dict(payload),
            severity=severity,
        )
        log_method = getattr(logger, severity.lower(), logger.info)
        log_method(event_type, event_id=event.id[:8], order_id=order_id, source=component,
                   payload=payload)
        self._state.events.append(event)
        return event.id

    async def for_order(self, order_id: str) -> list[StoredEvent]:
        return [e for e in self._state.events if e.order_id == order_id]

    @property
    def all(self) -> list[StoredEvent]:
        return list(self._state.events)


# =============================================================================
# UNIT OF WORK
# =============================================================================

class InMemoryUnitOfWork(IUnitOfWork):
    """Holds the write lock for its lifetime; undoes its writes on error"""

    def __init__(self, state: _MemoryState):
        self._state = state
        self._undo: list[Callable[[], None]] = []

    async def __aenter__(self) -> "InMemoryUnitOfWork":
        await self._state.write_lock.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc_type is not None:
                self._rollback()
        finally:
            self._undo.clear()
            self._state.write_lock.release()
        return False

    def _rollback(self):
        for undo in reversed(self._undo):
            undo()
        logger.info("unit_of_work_rolled_back", writes=len(self._undo))

    async def insert_order(self, order: Order) -> Order:
        state = self._state
        if order.pidx in state.pidx_index:
            raise DuplicateKeyError(order.pidx)
        state.orders[order.id] = order.model_copy(deep=True)
        state.pidx_index[order.pidx] = order.id

        def undo():
            state.orders.pop(order.id, None)
            state.pidx_index.pop(order.pidx, None)

        self._undo.append(undo)
        return order

    async def decrement_stock(self, product_id: str, quantity: int) -> Optional[StockUpdate]:
        state = self._state
        product = state.products.get(product_id)
        if product is None or product.stock_quantity < quantity:
            return None

        new_stock = product.stock_quantity - quantity
        delisted = new_stock == 0 and product.status == ListingStatus.ACTIVE
        state.products[product_id] = product.model_copy(update={
            "stock_quantity": new_stock,
            "status": ListingStatus.UNLISTED if new_stock == 0 else product.status,
            "updated_at": utcnow(),
        })
        self._undo.append(lambda: state.products.__setitem__(product_id, product))

        return StockUpdate(
            product_id=product_id,
            product_name=product.name,
            old_stock=product.stock_quantity,
            new_stock=new_stock,
            delisted=delisted,
        )


# =============================================================================
# STORAGE
# =============================================================================

class MemoryStorage(Storage):
    """Process-local storage backend"""

    def __init__(self):
        self._state = _MemoryState()
        self.products = InMemoryProductRepository(self._state)
        self.orders = InMemoryOrderRepository(self._state)
        self.carts = InMemoryCartRepository(self._state)
        self.events = InMemoryEventLog(self._state)

    def unit_of_work(self) -> InMemoryUnitOfWork:
        return InMemoryUnitOfWork(self._state)

    def seed_product(self, product: Product) -> Product:
        """Synchronous insert for fixtures and local development."""
        self._state.products[product.id] = product.model_copy(deep=True)
        return product

    def seed_order(self, order: Order) -> Order:
        self._state.orders[order.id] = order.model_copy(deep=True)
        self._state.pidx_index[order.pidx] = order.id
        return order

    def product_snapshot(self, product_id: str) -> Optional[Product]:
        product = self._state.products.get(product_id)
        return product.model_copy(deep=True) if product else None
