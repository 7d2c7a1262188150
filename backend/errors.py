"""Exception taxonomy for the storefront backend.

Every error carries the HTTP status it maps to, a machine-readable
``error_key`` and optional ``details`` that are safe to show the shopper.
"""

from typing import Any, Optional


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    status_code: int = 500
    error_key: str = "internal_error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


# --- Validation ---


class ValidationError(StorefrontError):
    """Raised when required fields are missing or malformed."""

    status_code = 400
    error_key = "validation_error"


# --- Authentication / authorization ---


class AuthenticationRequiredError(StorefrontError):
    """Raised when an operation needs an authenticated caller."""

    status_code = 401
    error_key = "authentication_required"

    def __init__(self, message: str = "Not authorized, token missing"):
        super().__init__(message)


class RoleNotPermittedError(StorefrontError):
    """Raised when the caller's role does not allow the operation."""

    status_code = 403
    error_key = "role_not_permitted"

    def __init__(self, role: str, required: list[str]):
        self.role = role
        self.required = required
        super().__init__(
            f"Access denied. Required roles: {', '.join(required)}",
            {"yourRole": role},
        )


class OrderAccessDeniedError(StorefrontError):
    """Raised when a purchaser acts on an order they do not own."""

    status_code = 403
    error_key = "access_denied"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("Access denied")


# --- Not found ---


class NotFoundError(StorefrontError):
    """Raised when a referenced entity does not exist."""

    status_code = 404
    error_key = "not_found"


class ProductNotFoundError(NotFoundError):
    def __init__(self, product_id: str, message: str = "Product not found"):
        self.product_id = product_id
        super().__init__(message, {"productId": product_id})


class OrderNotFoundError(NotFoundError):
    def __init__(self, order_id: Optional[str] = None, pidx: Optional[str] = None):
        self.order_id = order_id
        self.pidx = pidx
        details = {"pidx": pidx} if pidx else {"orderId": order_id}
        super().__init__("Order not found", details)


class CartNotFoundError(NotFoundError):
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__("Cart not found")


class CartItemNotFoundError(NotFoundError):
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__("Item not found in cart", {"productId": product_id})


# --- Conflict ---


class OrderAlreadyExistsError(StorefrontError):
    """Raised when an order already exists for a payment session.

    This is not a failure: the caller should fetch the order by pidx.
    """

    status_code = 409
    error_key = "order_exists"

    def __init__(self, pidx: str, order_id: str):
        self.pidx = pidx
        self.order_id = order_id
        super().__init__("Order already exists", {"orderId": order_id, "pidx": pidx})


# --- Business rejections ---


class InsufficientStockError(StorefrontError):
    """Raised when a product cannot cover the requested quantity."""

    status_code = 400
    error_key = "insufficient_stock"

    def __init__(
        self,
        product_id: str,
        available: int,
        requested: int,
        message: Optional[str] = None,
        product_name: Optional[str] = None,
    ):
        self.product_id = product_id
        self.available = available
        self.requested = requested
        details = {"availableStock": available, "requestedQuantity": requested}
        if product_name:
            details["productName"] = product_name
        super().__init__(message or f"Insufficient stock: only {available} available", details)


class IllegalTransitionError(StorefrontError):
    """Raised when an order status change is not allowed."""

    status_code = 409
    error_key = "illegal_transition"

    def __init__(self, current: str, requested: str, reason: Optional[str] = None):
        self.current = current
        self.requested = requested
        msg = reason or f"Cannot move order from '{current}' to '{requested}'"
        super().__init__(msg, {"currentStatus": current, "requestedStatus": requested})


class PaymentNotSettledError(StorefrontError):
    """Raised when the gateway does not report the session as Completed."""

    status_code = 400
    error_key = "payment_not_settled"

    def __init__(self, pidx: str, gateway_status: str):
        self.pidx = pidx
        self.gateway_status = gateway_status
        super().__init__(
            f"Payment {pidx} is not completed (gateway status: {gateway_status})",
            {"pidx": pidx, "gatewayStatus": gateway_status},
        )


# --- Upstream ---


class GatewayError(StorefrontError):
    """Raised when the payment gateway answers with a non-success status.

    ``body`` is the gateway's response, passed through verbatim.
    """

    error_key = "gateway_error"

    def __init__(self, status_code: int, body: Any):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Payment gateway returned HTTP {status_code}")


class GatewayUnavailableError(StorefrontError):
    """Raised when the payment gateway could not be reached."""

    status_code = 502
    error_key = "gateway_unavailable"

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Payment gateway unreachable during {operation}")


# --- System ---


class StorageError(StorefrontError):
    """Raised when the backing store fails."""

    status_code = 500
    error_key = "storage_error"


class OrderPersistenceError(StorageError):
    """Raised when writing an order or its stock update failed.

    The write may have succeeded; callers must re-fetch by pidx first.
    """

    error_key = "order_creation_failed"

    def __init__(self, pidx: str, reason: str):
        self.pidx = pidx
        self.reason = reason
        super().__init__("Failed to create order", {"pidx": pidx})


class CartSyncError(StorefrontError):
    """Raised client-side when the server rejected or missed a cart call."""

    error_key = "cart_sync_failed"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code or 503
        super().__init__(message)
