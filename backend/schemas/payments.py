"""
Payment Gateway Schemas (Khalti ePayment v2)
============================================
Wire models for the two outbound calls. Field names follow the gateway's
own snake_case JSON, so these models do not use camelCase aliases.
Amounts are in paisa (minor units).
"""

from enum import Enum
from typing import ClassVar, Optional

from pydantic import BaseModel, ConfigDict


class SettlementStatus(str, Enum):
    """Settlement status reported by lookup"""
    COMPLETED = "Completed"
    PENDING = "Pending"
    INITIATED = "Initiated"
    REFUNDED = "Refunded"
    EXPIRED = "Expired"
    USER_CANCELED = "User canceled"
    PARTIALLY_REFUNDED = "Partially Refunded"


class GatewayCustomerInfo(BaseModel):
    name: str
    email: str
    phone: str


class AmountBreakdown(BaseModel):
    label: str
    amount: int


class ProductDetail(BaseModel):
    identity: str
    name: str
    total_price: int
    quantity: int
    unit_price: int


class InitiateRequest(BaseModel):
    """Payload forwarded to ``/epayment/initiate/``"""
    model_config = ConfigDict(extra="allow")

    return_url: Optional[str] = None
    website_url: Optional[str] = None
    amount: Optional[int] = None
    purchase_order_id: Optional[str] = None
    purchase_order_name: Optional[str] = None
    customer_info: Optional[GatewayCustomerInfo] = None
    amount_breakdown: Optional[list[AmountBreakdown]] = None
    product_details: Optional[list[ProductDetail]] = None

    REQUIRED_FIELDS: ClassVar[tuple[str, ...]] = (
        "return_url",
        "website_url",
        "amount",
        "purchase_order_id",
        "purchase_order_name",
    )

    def missing_field(self) -> Optional[str]:
        for name in self.REQUIRED_FIELDS:
            if not getattr(self, name):
                return name
        return None


class InitiateResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    pidx: str
    payment_url: str
    expires_at: str
    expires_in: int


class LookupRequest(BaseModel):
    pidx: Optional[str] = None


class LookupResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    pidx: str
    total_amount: int
    status: SettlementStatus
    transaction_id: Optional[str] = None
    fee: int = 0
    refunded: bool = False

    @property
    def authorizes_order(self) -> bool:
        """Only a Completed session may turn into an order."""
        return self.status == SettlementStatus.COMPLETED

