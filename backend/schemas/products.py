"""
Product Schemas - The Stock Ledger Carrier
==========================================
A sellable item. ``stock_quantity`` is the Stock Ledger: it is written
only by order creation (decrement) and never goes negative. Reaching zero
through an order delists the product in the same atomic update.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import Field

from schemas.base import CamelModel, utcnow


PLACEHOLDER_IMAGE = "/images/placeholder.jpg"


class ListingStatus(str, Enum):
    ACTIVE = "active"
    UNLISTED = "unlisted"


class Product(CamelModel):
    """Sellable item as the order pipeline sees it"""
    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    description: Optional[str] = None
    price: float = Field(ge=0)
    stock_quantity: int = Field(default=0, ge=0)
    status: ListingStatus = ListingStatus.ACTIVE
    images: list[str] = Field(default_factory=list)
    primary_image: Optional[str] = None
    vendor_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_sellable(self) -> bool:
        return self.status == ListingStatus.ACTIVE and self.stock_quantity > 0

    def display_image(self, placeholder: str = PLACEHOLDER_IMAGE) -> str:
        if self.primary_image:
            return self.primary_image
        if self.images:
            return self.images[0]
        return placeholder


class ProductSummary(CamelModel):
    """Product fields embedded in order responses"""
    id: str
    name: str
    price: float
    primary_image: Optional[str] = None
    images: list[str] = Field(default_factory=list)
    vendor_id: Optional[str] = None

    @classmethod
    def from_product(cls, product: Product) -> "ProductSummary":
        return cls(
            id=product.id,
            name=product.name,
            price=product.price,
            primary_image=product.primary_image,
            images=list(product.images),
            vendor_id=product.vendor_id,
        )


class StockUpdate(CamelModel):
    """Outcome of one atomic decrement-if-sufficient"""
    product_id: str
    product_name: str
    old_stock: int
    new_stock: int
    delisted: bool = False
