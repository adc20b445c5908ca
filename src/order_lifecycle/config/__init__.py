"""Configuration module - Settings and business constants."""

from order_lifecycle.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
