"""Order lifecycle service: status machine, payment settlement and carrier webhooks."""

__version__ = "1.0.0"
