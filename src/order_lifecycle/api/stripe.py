"""Stripe Checkout API client."""

from typing import Any, Dict, Optional

import httpx

from order_lifecycle.config.constants import STRIPE_API_URL
from order_lifecycle.core.errors import ExternalServiceError

from .base import ProviderClient


class StripeClient(ProviderClient):
    """Async client for the handful of Stripe endpoints settlement needs."""

    provider = "stripe"

    def __init__(
        self,
        secret_key: str,
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        base_url: str = STRIPE_API_URL,
    ):
        super().__init__(base_url, timeout=timeout, transport=transport)
        self.secret_key = secret_key

    async def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        """GET /v1/checkout/sessions/{id}."""
        if not self.secret_key:
            raise ExternalServiceError("PROVIDER_NOT_CONFIGURED", "Stripe secret key is not configured")
        return await self._send(
            "GET",
            f"/v1/checkout/sessions/{session_id}",
            headers={"Authorization": f"Bearer {self.secret_key}"},
        )
