"""
Storage Interfaces
==================
Repository abstractions shared by the in-memory and PostgreSQL backends.

Order creation writes through a unit of work so that the order insert and
the stock decrement commit or roll back together:

    async with storage.unit_of_work() as uow:
        await uow.insert_order(order)          # DuplicateKeyError on pidx clash
        update = await uow.decrement_stock(product_id, quantity)

Leaving the block with an exception rolls every write back.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from schemas.base import utcnow
from schemas.carts import Cart
from schemas.orders import Order, OrderFilter, OrderStatus
from schemas.products import Product, StockUpdate


class DuplicateKeyError(Exception):
    """Raised by a unit of work when an order for the pidx already exists."""

    def __init__(self, pidx: str):
        self.pidx = pidx
        super().__init__(f"Order for pidx {pidx} already exists")


class StoredEvent(BaseModel):
    """One entry of the black box event log"""
    id: str
    order_id: Optional[str] = None
    event_type: str
    component: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    severity: str = "INFO"
    timestamp: datetime = Field(default_factory=utcnow)


# =============================================================================
# REPOSITORIES
# =============================================================================

class IProductRepository(ABC):
    """Product lookups; stock is written only through a unit of work"""

    @abstractmethod
    async def get(self, product_id: str) -> Optional[Product]:
        pass

    @abstractmethod
    async def get_many(self, product_ids: list[str]) -> dict[str, Product]:
        pass

    @abstractmethod
    async def save(self, product: Product) -> Product:
        """Insert or replace a product (seeding only)."""
        pass


class IOrderRepository(ABC):
    """Order-specific repository interface"""

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_pidx(self, pidx: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def search(self, criteria: OrderFilter) -> tuple[list[Order], int]:
        """Return one page of matching orders, newest first, and the total count."""
        pass

    @abstractmethod
    async def compare_and_set(self, order: Order, expected_status: OrderStatus) -> bool:
        """Replace ``order`` only if its stored status is still ``expected_status``."""
        pass


class ICartRepository(ABC):
    """Cart record store keyed by user"""

    @abstractmethod
    async def get(self, user_id: str) -> Optional[Cart]:
        pass

    @abstractmethod
    async def save(self, cart: Cart) -> Cart:
        pass


class IEventLog(ABC):
    """The black box: append-only audit trail of order events"""

    @abstractmethod
    async def record(
        self,
        event_type: str,
        payload: dict[str, Any],
        order_id: Optional[str] = None,
        component: Optional[str] = None,
        severity: str = "INFO",
    ) -> str:
        pass

    @abstractmethod
    async def for_order(self, order_id: str) -> list[StoredEvent]:
        pass


# =============================================================================
# UNIT OF WORK
# =============================================================================

class IUnitOfWork(ABC):
    """Order insert + conditional stock decrement, atomically"""

    @abstractmethod
    async def insert_order(self, order: Order) -> Order:
        """Insert a new order. Raises DuplicateKeyError if the pidx is taken."""
        pass

    @abstractmethod
    async def decrement_stock(self, product_id: str, quantity: int) -> Optional[StockUpdate]:
        """Decrement stock only if sufficient, delisting at zero.

        Returns None when the product is missing or has fewer than
        ``quantity`` units.
        """
        pass

    @abstractmethod
    async def __aenter__(self) -> "IUnitOfWork":
        pass

    @abstractmethod
    async def __aexit__(self, exc_type, exc, tb) -> bool:
        pass


class Storage(ABC):
    """Bundle of repositories handed to services"""

    products: IProductRepository
    orders: IOrderRepository
    carts: ICartRepository
    events: IEventLog

    @abstractmethod
    def unit_of_work(self) -> IUnitOfWork:
        pass

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @property
    def backend(self) -> str:
        return type(self).__name__
