"""PayPal Orders v2 API client."""

import time
from typing import Any, Dict, Optional

import httpx

from order_lifecycle.config.constants import PAYPAL_LIVE_URL, PAYPAL_SANDBOX_URL
from order_lifecycle.core.errors import ExternalServiceError
from order_lifecycle.core.logger import setup_logger

from .base import ProviderClient

logger = setup_logger(__name__)

# Refresh the OAuth token this many seconds before PayPal expires it
TOKEN_EXPIRY_MARGIN = 60


class PayPalClient(ProviderClient):
    """Async client for the PayPal REST API (OAuth2 client credentials)."""

    provider = "paypal"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        mode: str = "sandbox",
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        base_url = PAYPAL_LIVE_URL if mode == "live" else PAYPAL_SANDBOX_URL
        super().__init__(base_url, timeout=timeout, transport=transport)
        self.client_id = client_id
        self.client_secret = client_secret
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    async def get_access_token(self) -> str:
        """Return a cached OAuth access token, fetching a new one when expired."""
        if self._access_token and time.time() < self._token_expires_at:
            return self._access_token

        if not self.client_id or not self.client_secret:
            raise ExternalServiceError("PROVIDER_NOT_CONFIGURED", "PayPal credentials are not configured")

        data = await self._send(
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
            headers={"Accept": "application/json"},
        )
        token = data.get("access_token")
        if not token:
            raise ExternalServiceError("PROVIDER_ERROR", "PayPal did not return an access token")

        self._access_token = token
        self._token_expires_at = time.time() + int(data.get("expires_in", 0)) - TOKEN_EXPIRY_MARGIN
        logger.debug("Obtained PayPal access token")
        return token

    async def _headers(self) -> Dict[str, str]:
        token = await self.get_access_token()
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    async def get_order(self, paypal_order_id: str) -> Dict[str, Any]:
        """GET /v2/checkout/orders/{id}."""
        return await self._send("GET", f"/v2/checkout/orders/{paypal_order_id}", headers=await self._headers())

    async def capture_order(self, paypal_order_id: str) -> Dict[str, Any]:
        """
        POST /v2/checkout/orders/{id}/capture.

        Raises:
            ExternalServiceError: code ORDER_ALREADY_CAPTURED when a concurrent
                caller captured the order first
        """
        try:
            return await self._send(
                "POST",
                f"/v2/checkout/orders/{paypal_order_id}/capture",
                headers=await self._headers(),
            )
        except ExternalServiceError as e:
            if _issue(e.details.get("body")) == "ORDER_ALREADY_CAPTURED":
                raise ExternalServiceError(
                    "ORDER_ALREADY_CAPTURED",
                    "PayPal order was already captured",
                    details=e.details,
                ) from e
            raise


def _issue(body: Optional[Dict[str, Any]]) -> Optional[str]:
    if not body:
        return None
    for detail in body.get("details") or []:
        if isinstance(detail, dict) and detail.get("issue"):
            return detail["issue"]
    return body.get("name")


def extract_amount(paypal_order: Dict[str, Any]) -> Optional[Dict[str, str]]:
    """``{"value", "currency_code"}`` of the first purchase unit."""
    units = paypal_order.get("purchase_units") or []
    if not units:
        return None
    return units[0].get("amount")


def extract_order_reference(paypal_order: Dict[str, Any]) -> Optional[str]:
    """Local order id the PayPal order was created for (``reference_id``, else ``custom_id``)."""
    units = paypal_order.get("purchase_units") or []
    if not units:
        return None
    return units[0].get("reference_id") or units[0].get("custom_id")


def extract_capture_id(paypal_order: Dict[str, Any]) -> Optional[str]:
    units = paypal_order.get("purchase_units") or []
    if not units:
        return None
    captures = (units[0].get("payments") or {}).get("captures") or []
    return captures[0].get("id") if captures else None


def extract_payer(paypal_order: Dict[str, Any]) -> Dict[str, Any]:
    payer = paypal_order.get("payer") or {}
    name = payer.get("name") or {}
    return {
        "payer_id": payer.get("payer_id"),
        "payer_email": payer.get("email_address"),
        "payer_name": " ".join(part for part in (name.get("given_name"), name.get("surname")) if part) or None,
    }
