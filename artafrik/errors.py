"""
Error taxonomy. Every error that may reach a client carries a safe,
human-readable message and the HTTP status it maps to.
"""
from typing import Optional


class ShopError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ShopError):
    """User-correctable input problem (cart, shipping, rate, payload)."""
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class ForbiddenError(ShopError):
    status_code = 401


class NotFoundError(ShopError):
    status_code = 404


class AuthError(ShopError):
    """Gateway credentials missing or the token exchange failed."""


class WebhookError(ShopError):
    """IPN registration failed. `detail` keeps the raw gateway reply."""

    def __init__(self, message: str, detail: str = "") -> None:
        super().__init__(message)
        self.detail = detail


class GatewayError(ShopError):
    """Non-success or unparseable reply from the payment gateway."""


class PersistenceError(ShopError):
    pass
