"""Custom exceptions for the ecommerce API.

Every error raised by the workflows carries the HTTP status it should be
reported with. Anything that is not an AppError is treated as an internal
failure by the exception handlers in main.py.
"""

from typing import Optional


class AppError(Exception):
    """Base exception for all domain errors."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class BadRequestError(AppError):
    """Raised when a request is well-formed but cannot be honoured as is."""

    status_code = 400


class NotFoundError(AppError):
    """Raised when a referenced entity doesn't exist."""

    status_code = 404


class ForbiddenError(AppError):
    """Raised when the caller doesn't own the resource or lacks the role."""

    status_code = 403


class UnauthorizedError(AppError):
    """Raised when credentials or tokens are missing or invalid."""

    status_code = 401

    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code
        super().__init__(message)


class ConflictError(AppError):
    """Raised on an illegal state transition, e.g. cancelling a shipped order."""

    status_code = 400


class InsufficientStockError(AppError):
    status_code = 400

    def __init__(self, product_name: str, requested: int, available: Optional[int] = None):
        self.product_name = product_name
        self.requested = requested
        self.available = available
        super().__init__(f"Insufficient stock for product {product_name}")


class InvalidSignatureError(AppError):
    """Raised when a payment or webhook signature doesn't match."""

    status_code = 400


class ValidationFailedError(AppError):
    """Raised when input is malformed. Carries one entry per bad field."""

    status_code = 400

    def __init__(self, errors: list[dict], message: str = "Validation error"):
        self.errors = errors
        super().__init__(message)


class LockedError(AppError):
    """Raised when an account is temporarily locked after failed logins."""

    status_code = 423


class ConfigurationError(AppError):
    """Raised when a required secret or setting is missing at runtime."""

    status_code = 500
