"""
Custom exceptions for the storefront application.
"""
from typing import Any, List, Optional


class StorefrontError(Exception):
    """Base exception for storefront operations"""
    pass


class ValidationError(StorefrontError):
    """Raised when validation fails"""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class LimitExceededError(ValidationError):
    """Raised when cart limits are exceeded"""
    pass


class CartNotFoundError(StorefrontError):
    """Raised when a cart does not exist"""
    def __init__(self, token: str):
        self.token = token
        super().__init__("Cart not found")


class CartNotActiveError(StorefrontError):
    """Raised when an operation needs an open cart but the cart is closed or checking out"""
    def __init__(self, token: Optional[str], reason: str = "Cart is not active"):
        self.token = token
        super().__init__(reason)


class CartItemNotFoundError(StorefrontError):
    """Raised when a cart item does not exist in the cart"""
    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Unable to find a shopping cart item: {item_id}")


class ProductNotFoundError(StorefrontError):
    """Raised when a product does not exist in the catalog"""
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Unable to find product: {product_id}")


class PaymentNotFoundError(StorefrontError):
    """Raised when a payment does not exist"""
    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment does not exist: {payment_id}")


class CartTotalsMismatchError(StorefrontError):
    """Raised when the persisted grand total disagrees with a fresh computation"""
    def __init__(self, persisted: Any, computed: Any):
        self.persisted = persisted
        self.computed = computed
        super().__init__(
            f"Cart totals are out of date (persisted {persisted}, computed {computed})"
        )


class PaymentError(StorefrontError):
    """
    Raised when the payment gateway declines or rejects a charge.

    ``errors`` is the gateway's own structured error list, kept as received
    so the API can relay provider specific decline reasons.
    """
    def __init__(self, errors: Optional[List[dict]] = None, message: str = "Invalid request"):
        self.errors = errors
        self.message = message
        super().__init__(message)


class ShippingGatewayError(StorefrontError):
    """Raised when the shipping carrier API fails"""
    def __init__(self, message: str, payload: Any = None):
        self.message = message
        self.payload = payload
        super().__init__(message)


class EmailDeliveryError(StorefrontError):
    """Raised when an email cannot be composed or sent"""
    pass


class RedisConnectionError(StorefrontError):
    """Raised when Redis connection fails"""
    pass


class TaxRateNotFoundError(StorefrontError):
    """Raised when a tax rate does not exist"""
    def __init__(self, tax_rate_id: str):
        self.tax_rate_id = tax_rate_id
        super().__init__(f"Tax rate does not exist: {tax_rate_id}")


class ConfigurationError(StorefrontError):
    """Raised when a required external service has no credentials configured"""
    pass
