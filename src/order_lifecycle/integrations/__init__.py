"""Integrations module - Customer notification dispatch."""

from order_lifecycle.integrations.notifier import NotificationDispatcher

__all__ = ["NotificationDispatcher"]
