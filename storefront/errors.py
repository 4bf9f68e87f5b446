from typing import Optional


class StorefrontError(Exception):
    """Base class for failures that map onto an HTTP response."""

    status_code = 500
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


class EmptyCartError(StorefrontError):
    status_code = 400
    message = "Cart is empty"


class InsufficientStockError(StorefrontError):
    status_code = 400

    def __init__(self, product_title: str):
        self.product_title = product_title
        super().__init__(f"{product_title} is currently out of stock")


class InvalidSignatureError(StorefrontError):
    # Never say which part of the signature was wrong.
    status_code = 400
    message = "Invalid signature"


class OrderNotFoundError(StorefrontError):
    status_code = 404
    message = "Order not found"


class ProductNotFoundError(StorefrontError):
    status_code = 404
    message = "Product not found"


class CartItemNotFoundError(StorefrontError):
    status_code = 404
    message = "Cart item not found"


class StockLimitError(StorefrontError):
    status_code = 400
    message = "Requested quantity exceeds available stock"


class GatewayError(StorefrontError):
    status_code = 500
    message = "Failed to create order"


class PaymentGatewayUnavailable(StorefrontError):
    status_code = 503
    message = "Payment gateway not configured"


class OrderAccessDenied(StorefrontError):
    status_code = 403
    message = "Access denied"


class OrderStateError(StorefrontError):
    status_code = 409
    message = "Order can no longer be paid"
