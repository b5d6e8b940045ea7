"""
Custom exceptions for the checkout service.
"""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Category attached to structured outcomes"""
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    NETWORK = "network"
    BUSINESS = "business"
    BUSY = "busy"
    STORAGE = "storage"


class CheckoutException(Exception):
    """Base exception for checkout operations"""
    kind: ErrorKind = ErrorKind.BUSINESS

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(CheckoutException):
    """Raised when required input is missing or malformed"""
    kind = ErrorKind.VALIDATION


class LimitExceededError(CheckoutException):
    """Raised when cart limits are exceeded"""
    kind = ErrorKind.VALIDATION


class AuthenticationError(CheckoutException):
    """Raised on bad credentials or an expired session"""
    kind = ErrorKind.AUTHENTICATION


class UpstreamError(CheckoutException):
    """Raised when an external collaborator is unreachable, times out or fails"""
    kind = ErrorKind.NETWORK

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class SessionStoreError(CheckoutException):
    """Raised when the session store cannot be reached"""
    kind = ErrorKind.STORAGE


class OperationInProgressError(CheckoutException):
    """Raised when an operation is started while the same one is in flight"""
    kind = ErrorKind.BUSY

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Operation already in progress: {operation}")


class CartNotFoundError(CheckoutException):
    """Raised when a cart does not exist"""
    def __init__(self, cart_id: str):
        self.cart_id = cart_id
        super().__init__(f"Cart not found: {cart_id}")


class ProductNotFoundError(CheckoutException):
    """Raised when a variant is not found in cart"""
    def __init__(self, variant_id: str):
        self.variant_id = variant_id
        super().__init__(f"Variant not found in cart: {variant_id}")


class CheckoutSessionNotFoundError(CheckoutException):
    """Raised when a checkout session id is unknown"""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Checkout session not found: {session_id}")
