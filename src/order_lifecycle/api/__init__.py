"""Payment provider API clients."""

from .paypal import PayPalClient
from .stripe import StripeClient

__all__ = ["PayPalClient", "StripeClient"]
