# services/__init__.py
# ============================================================================
# STOREFRONT CORE — SERVICES MODULE
# ============================================================================
# Payment gateway adapter, order creation, order lifecycle, server cart
# ============================================================================

from services.cart_service import CartService
from services.order_service import OrderService
from services.order_state_machine import (
    OrderStateMachine,
    allowed_targets,
    check_transition,
)
from services.payment_gateway import KhaltiGateway

__all__ = [
    # Gateway
    "KhaltiGateway",
    # Orders
    "OrderService",
    "OrderStateMachine",
    "allowed_targets",
    "check_transition",
    # Cart
    "CartService",
]
