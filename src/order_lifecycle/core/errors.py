"""Error taxonomy shared by the services and the HTTP layer."""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    EXTERNAL = "external"
    INTERNAL = "internal"


class OrderLifecycleError(Exception):
    """Base error carrying a machine-readable code and a category.

    Only errors in the EXTERNAL category may be flagged retryable.
    """

    category = ErrorCategory.INTERNAL

    def __init__(
        self,
        code: str,
        message: str,
        category: Optional[ErrorCategory] = None,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        if category is not None:
            self.category = category
        self.retryable = retryable and self.category == ErrorCategory.EXTERNAL
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }


class ValidationError(OrderLifecycleError):
    category = ErrorCategory.VALIDATION


class AuthError(OrderLifecycleError):
    category = ErrorCategory.AUTH


class NotFoundError(OrderLifecycleError):
    category = ErrorCategory.NOT_FOUND


class ConflictError(OrderLifecycleError):
    category = ErrorCategory.CONFLICT


class ExternalServiceError(OrderLifecycleError):
    category = ErrorCategory.EXTERNAL

    def __init__(self, code: str, message: str, retryable: bool = False, timeout: bool = False, **kwargs):
        super().__init__(code, message, retryable=retryable, **kwargs)
        self.timeout = timeout


class PersistenceError(OrderLifecycleError):
    category = ErrorCategory.INTERNAL

    def __init__(self, message: str, code: str = "PERSISTENCE_ERROR", **kwargs):
        super().__init__(code, message, **kwargs)


def http_status_for(error: OrderLifecycleError) -> int:
    """Map an error to the HTTP status the API answers with."""
    if error.category == ErrorCategory.VALIDATION:
        return 400
    if error.category == ErrorCategory.AUTH:
        return 401 if error.code == "UNAUTHORIZED" else 403
    if error.category == ErrorCategory.NOT_FOUND:
        return 404
    if error.category == ErrorCategory.CONFLICT:
        return 409
    if error.category == ErrorCategory.EXTERNAL:
        return 504 if getattr(error, "timeout", False) else 502
    return 500
