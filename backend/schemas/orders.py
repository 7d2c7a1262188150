"""
Order Schemas
=============
Persisted orders, keyed uniquely by the gateway's payment session id
(``pidx``). An order is created once, at payment confirmation, mutated
only through the status state machine, and never deleted.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import Field, field_validator

from schemas.base import CamelModel, utcnow
from schemas.products import ProductSummary, StockUpdate


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(str, Enum):
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    READY_TO_SHIP = "ready_to_ship"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.REFUNDED, OrderStatus.FAILED})


class PaymentStatus(str, Enum):
    COMPLETED = "completed"
    REFUNDED = "refunded"


# =============================================================================
# SNAPSHOTS
# =============================================================================

class CustomerInfo(CamelModel):
    name: str
    email: str
    phone: str = ""


class ShippingAddress(CamelModel):
    full_name: str
    phone: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: str
    country: str = "Nepal"


class ShippingInfo(CamelModel):
    carrier: Optional[str] = None
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None


class OrderTimeline(CamelModel):
    """One timestamp per status ever reached; set once, never rewritten"""
    ordered: Optional[datetime] = None
    confirmed: Optional[datetime] = None
    processing: Optional[datetime] = None
    ready_to_ship: Optional[datetime] = None
    shipped: Optional[datetime] = None
    out_for_delivery: Optional[datetime] = None
    delivered: Optional[datetime] = None
    cancelled: Optional[datetime] = None
    refunded: Optional[datetime] = None
    failed: Optional[datetime] = None

    def stamp(self, status: OrderStatus, at: datetime) -> "OrderTimeline":
        """Return a copy with ``status`` stamped, keeping any earlier stamp."""
        if getattr(self, status.value) is not None:
            return self
        return self.model_copy(update={status.value: at})


# =============================================================================
# ORDER ENTITY
# =============================================================================

class Order(CamelModel):
    """Core order entity"""
    id: str = Field(default_factory=lambda: str(uuid4()))
    pidx: str = Field(min_length=1)
    transaction_id: Optional[str] = None

    product_id: str
    user_id: str
    quantity: int = Field(ge=1)
    total_amount: float = Field(ge=0)

    customer_info: CustomerInfo
    shipping_address: Optional[ShippingAddress] = None

    status: OrderStatus = OrderStatus.CONFIRMED
    payment_status: PaymentStatus = PaymentStatus.COMPLETED
    shipping: ShippingInfo = Field(default_factory=ShippingInfo)
    timeline: OrderTimeline = Field(default_factory=OrderTimeline)

    cancellation_reason: Optional[str] = None
    refund_reason: Optional[str] = None
    notes: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class OrderView(Order):
    """Order as returned to callers, with the product populated"""
    product: Optional[ProductSummary] = None

    @classmethod
    def build(cls, order: Order, product: Optional[ProductSummary] = None) -> "OrderView":
        return cls(**order.model_dump(), product=product)


class OrderCreationResult(CamelModel):
    """Outcome of create_order: a new order, or the one already on file"""
    order: OrderView
    created: bool
    stock_update: Optional[StockUpdate] = None


# =============================================================================
# REQUESTS
# =============================================================================

class CreateOrderRequest(CamelModel):
    """Inbound order creation, sent after a Completed lookup"""
    pidx: Optional[str] = None
    transaction_id: Optional[str] = None
    product_id: Optional[str] = None
    quantity: Optional[int] = None
    total_amount: Optional[float] = None
    customer_info: Optional[CustomerInfo] = None
    shipping_address: Optional[ShippingAddress] = None


class CancelOrderRequest(CamelModel):
    reason: Optional[str] = None


class RefundOrderRequest(CamelModel):
    reason: Optional[str] = None


class AdminStatusUpdateRequest(CamelModel):
    status: str
    notes: Optional[str] = None


class AdminPaymentStatusRequest(CamelModel):
    payment_status: str


class AdminShippingUpdateRequest(CamelModel):
    carrier: Optional[str] = None
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


class AdminNotesRequest(CamelModel):
    notes: Optional[str] = None


class AdminCancelRequest(CamelModel):
    cancellation_reason: Optional[str] = None


class AdminRefundRequest(CamelModel):
    refund_reason: Optional[str] = None


# =============================================================================
# LISTING
# =============================================================================

class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    pages: int

    @classmethod
    def of(cls, page: int, limit: int, total: int) -> "Pagination":
        pages = (total + limit - 1) // limit if limit else 0
        return cls(page=page, limit=limit, total=total, pages=pages)


class OrderFilter(CamelModel):
    user_id: Optional[str] = None
    product_id: Optional[str] = None
    vendor_id: Optional[str] = None     # any product listed by this vendor
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    search: Optional[str] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)

    @field_validator("status", "payment_status", mode="before")
    @classmethod
    def _all_means_any(cls, value):
        if value in ("", "all"):
            return None
        return value

    @field_validator("created_from", "created_to")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class OrderPage(CamelModel):
    orders: list[OrderView]
    pagination: Pagination
