"""
Cart Schemas
============
A cart is a wish-list of availability, not a reservation. Each line holds
a price/name/image snapshot taken when the line was added. ``total`` and
``item_count`` are always derived from ``items``.
"""

from datetime import datetime
from typing import Optional

from pydantic import Field, computed_field

from schemas.base import CamelModel, utcnow


MAX_LINE_QUANTITY = 100


class CartItem(CamelModel):
    product_id: str
    quantity: int = Field(ge=1, le=MAX_LINE_QUANTITY)
    price: float = Field(ge=0)
    name: str
    image: str

    @computed_field
    @property
    def subtotal(self) -> float:
        return self.price * self.quantity


class Cart(CamelModel):
    """Cart owned by one user (server) or held by a guest (client)"""
    user_id: Optional[str] = None
    items: list[CartItem] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def total(self) -> float:
        return sum(item.price * item.quantity for item in self.items)

    @computed_field
    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def is_empty(self) -> bool:
        return not self.items

    def find(self, product_id: str) -> Optional[CartItem]:
        for item in self.items:
            if item.product_id == product_id:
                return item
        return None

    def index_of(self, product_id: str) -> int:
        for i, item in enumerate(self.items):
            if item.product_id == product_id:
                return i
        return -1


# =============================================================================
# REQUESTS
# =============================================================================

class AddToCartRequest(CamelModel):
    product_id: Optional[str] = None
    quantity: int = 1


class UpdateQuantityRequest(CamelModel):
    quantity: Optional[int] = None


class SyncLine(CamelModel):
    product_id: str
    quantity: int


class SyncCartRequest(CamelModel):
    items: list[SyncLine] = Field(default_factory=list)
