"""Custom exceptions for the shop API.

Handlers raise these; ``main.py`` maps each class to an HTTP status code and
renders the ``{"success": false, "message": ...}`` envelope.
"""
from typing import Any, Optional


class ShopError(Exception):
    """Base exception for all shop errors.

    Keyword arguments are kept in ``extra`` and merged into the error
    response body (e.g. ``available=3`` for stock errors).
    """

    def __init__(self, message: str, **extra: Any):
        self.message = message
        self.extra = extra
        super().__init__(message)


class InvalidInputError(ShopError):
    """Raised when a field is missing or malformed."""


class NotFoundError(ShopError):
    """Raised when a referenced document doesn't exist."""

    def __init__(self, entity: str, entity_id: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found")


class BusinessRuleError(ShopError):
    """Raised when a request is well formed but breaks a business rule."""


class InsufficientStockError(BusinessRuleError):
    """Raised when the requested quantity exceeds the available stock."""

    def __init__(self, product_name: str, available: int):
        self.product_name = product_name
        self.available = available
        super().__init__(
            f"Not enough stock available for {product_name}",
            available=available,
        )


class CouponError(BusinessRuleError):
    """Raised when a coupon or promo code cannot be applied."""


class DuplicateError(BusinessRuleError):
    """Raised when a unique field is already taken."""


class InvalidTransitionError(BusinessRuleError):
    """Raised when an order status change is not allowed."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot change order status from '{current}' to '{requested}'")


class PaymentProviderError(BusinessRuleError):
    """Raised when the payment provider rejects a charge."""


class AuthenticationError(ShopError):
    """Raised when the caller is not authenticated."""


class PermissionDeniedError(ShopError):
    """Raised when the caller lacks the required capability."""


class RateLimitError(ShopError):
    """Raised when a caller exceeds the request ceiling of a route group."""

    def __init__(self, group: str, retry_after: int):
        self.group = group
        self.retry_after = retry_after
        super().__init__("Too many requests, please try again later", retry_after=retry_after)


class DatabaseUnavailableError(ShopError):
    """Raised when no database is configured."""

    def __init__(self):
        super().__init__("Database not configured")
