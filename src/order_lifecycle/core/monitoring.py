"""
GlitchTip Error Monitoring Utilities

Helper functions for error tracking and context management.
"""

from typing import Any, Dict, Optional

import sentry_sdk

from order_lifecycle.core.logger import setup_logger

logger = setup_logger(__name__)


def set_order_context(order_id: Optional[str], **extra_tags) -> None:
    """
    Tag the current scope with the order being processed.

    Args:
        order_id: Order identifier
        **extra_tags: Additional tags to add
    """
    try:
        if order_id:
            sentry_sdk.set_tag("order.id", order_id)
        for key, value in extra_tags.items():
            sentry_sdk.set_tag(key, value)
        sentry_sdk.set_context("order", {"order_id": order_id, **extra_tags})
    except Exception as e:
        logger.warning(f"Failed to set order context: {e}")


def set_webhook_context(
    source: str,
    event_type: Optional[str] = None,
    tracking_number: Optional[str] = None,
    **extra_tags
) -> None:
    """
    Set webhook-specific context for error tracking.

    Args:
        source: Webhook sender (stripe, dhl, colissimo, ...)
        event_type: Event type or carrier code
        tracking_number: Parcel tracking number for carrier webhooks
        **extra_tags: Additional tags to add
    """
    try:
        sentry_sdk.set_tag("webhook.source", source)
        if event_type:
            sentry_sdk.set_tag("webhook.event_type", event_type)
        if tracking_number:
            sentry_sdk.set_tag("webhook.tracking_number", tracking_number)
        for key, value in extra_tags.items():
            sentry_sdk.set_tag(key, value)

        context_data = {
            "source": source,
            "event_type": event_type,
            "tracking_number": tracking_number,
        }
        context_data.update(extra_tags)
        sentry_sdk.set_context("webhook", context_data)
    except Exception as e:
        logger.warning(f"Failed to set webhook context: {e}")


def capture_exception(
    error: Exception,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error"
) -> None:
    """
    Capture an exception and send to GlitchTip.

    Args:
        error: The exception to capture
        context: Additional context data
        level: Error level (error, warning, info)
    """
    try:
        with sentry_sdk.new_scope() as scope:
            if context:
                scope.set_context("custom", context)
            scope.set_level(level)
            sentry_sdk.capture_exception(error)
    except Exception as e:
        logger.warning(f"Failed to capture exception in GlitchTip: {e}")
