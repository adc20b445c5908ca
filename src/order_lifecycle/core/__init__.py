"""Core module - Logging, errors, monitoring, signature verification and event logging."""

from order_lifecycle.core.errors import ErrorCategory, OrderLifecycleError
from order_lifecycle.core.logger import setup_logger

__all__ = ["ErrorCategory", "OrderLifecycleError", "setup_logger"]
