"""
Application errors

Every business failure raised by the service modules is a ShopError. The
HTTP layer in main.py turns them into the standard response envelope using
the status_code carried by each class.
"""

from typing import Optional


class ShopError(Exception):
    status_code = 500
    error = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.error)
        self.message = message or self.error


class ValidationError(ShopError):
    status_code = 400
    error = "Validation failed"


class NotFoundError(ShopError):
    status_code = 404
    error = "Not found"


class InvalidStateError(ShopError):
    status_code = 400
    error = "Invalid state"


class UnauthorizedError(ShopError):
    status_code = 401
    error = "Not authenticated"


class ForbiddenError(ShopError):
    status_code = 403
    error = "Forbidden"


class ConflictError(ShopError):
    status_code = 409
    error = "Conflict"
