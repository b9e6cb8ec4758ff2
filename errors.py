"""Exceptions raised by the stock, cart and checkout services."""
from typing import Any, Dict, List, Optional


class ShopError(Exception):
    """Base exception for all storefront errors."""

    def __init__(self, message: str, detail: Optional[Any] = None):
        self.message = message
        self.detail = detail
        super().__init__(message)


class NotFoundError(ShopError):
    """Raised when a product, variant, order, cart or cart item is absent."""

    def __init__(self, what: str, detail: Optional[Any] = None):
        self.what = what
        super().__init__(f"{what} not found", detail)


class ValidationFailedError(ShopError):
    """Raised for malformed input that passed schema validation."""


class InsufficientStockError(ShopError):
    """Raised when a requested quantity exceeds available stock.

    `shortages` holds one entry per offending item with the requested
    quantity and the stock that was actually available.
    """

    def __init__(self, message: str, shortages: List[Dict[str, Any]]):
        self.shortages = shortages
        super().__init__(message, shortages)


class UnauthorizedError(ShopError):
    """Raised when the request carries no valid identity."""


class ForbiddenError(ShopError):
    """Raised when the acting user lacks ownership or admin rights."""


class InvalidOrderStateError(ShopError):
    """Raised when an order lifecycle transition is not permitted."""


class OrderInProgressError(ShopError):
    """Raised when another verification currently holds an order's stock update."""


class SignatureMismatchError(ShopError):
    """Raised when a payment signature fails the authenticity check."""


class UpstreamFailureError(ShopError):
    """Raised when the payment gateway is unreachable or returns an error."""
