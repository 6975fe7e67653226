"""Exceptions raised by the cart, coupon and checkout code.

Every error carries the HTTP status it is rendered with by the API layer.
"""


class ShopError(Exception):
    """Base exception for storefront errors."""

    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFound(ShopError):
    """Raised when a product, cart, order, address or coupon is absent."""

    status_code = 404

    def __init__(self, kind: str, ident: str | None = None):
        self.kind = kind
        self.ident = ident
        msg = f"{kind} not found"
        if ident:
            msg = f"{kind} not found: {ident}"
        super().__init__(msg)


class OutOfStock(ShopError):
    status_code = 409

    def __init__(self, product_name: str):
        self.product_name = product_name
        super().__init__(f"Product out of stock: {product_name}")


class InsufficientStock(ShopError):
    status_code = 409

    def __init__(self, product_name: str, requested: int, available: int):
        self.product_name = product_name
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for {product_name}: requested {requested}, available {available}"
        )


class EmptyCart(ShopError):
    def __init__(self):
        super().__init__("Cart is empty")


class InvalidCoupon(ShopError):
    """Raised when a coupon is unknown, inactive or not yet valid."""

    def __init__(self, message: str = "Invalid coupon"):
        super().__init__(message)


class CouponExpired(InvalidCoupon):
    def __init__(self, code: str | None = None):
        super().__init__(f"Coupon expired: {code}" if code else "Coupon expired")


class CouponUsageExceeded(InvalidCoupon):
    def __init__(self, message: str = "Coupon usage limit reached"):
        super().__init__(message)


class BelowMinimumCartValue(InvalidCoupon):
    def __init__(self, minimum: float):
        self.minimum = minimum
        super().__init__(f"Minimum cart value is {minimum:.2f}")


class Forbidden(ShopError):
    status_code = 403

    def __init__(self, message: str = "Not authorized"):
        super().__init__(message)


class InvalidState(ShopError):
    """Raised when an order transition is not allowed from its current state."""

    status_code = 409


class PaymentProcessorError(ShopError):
    """Raised when the payment processor call fails."""

    status_code = 502

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Payment processor error: {detail}")


class ValidationError(ShopError):
    """Raised for malformed input that passed request-shape validation."""
