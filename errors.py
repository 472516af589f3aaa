"""Custom exceptions for the storefront API."""
from typing import Optional


class StoreError(Exception):
    """Base exception for all storefront errors."""

    pass


class ValidationError(StoreError):
    """Raised when a required field is missing or malformed."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class NotFoundError(StoreError):
    """Raised when a product, order or cart line does not resolve."""

    def __init__(self, kind: str, ident: Optional[str] = None):
        self.kind = kind
        self.ident = ident
        msg = f"{kind} not found"
        if ident:
            msg = f"{kind} {ident} not found"
        super().__init__(msg)


class InsufficientStockError(StoreError):
    """Raised when the requested quantity exceeds current stock."""

    def __init__(self, product_name: str, available: int, requested: Optional[int] = None):
        self.product_name = product_name
        self.available = available
        self.requested = requested
        super().__init__(f"Insufficient stock for {product_name}. Only {available} available")


class AuthorizationError(StoreError):
    """Raised when the actor is neither the resource owner nor an administrator."""

    def __init__(self, message: str = "Not authorized to perform this action"):
        super().__init__(message)


class InvalidStateError(StoreError):
    """Raised when a status transition or cancellation is not allowed from the current state."""

    def __init__(self, current: str, target: str, message: Optional[str] = None):
        self.current = current
        self.target = target
        super().__init__(message or f"Cannot change order status from {current} to {target}")


class DuplicateActionError(StoreError):
    """Raised when a user repeats a once-only action, such as reviewing a product twice."""

    def __init__(self, message: str):
        super().__init__(message)
