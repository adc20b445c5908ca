"""Shared plumbing for payment provider HTTP clients."""

from typing import Any, Dict, Optional

import httpx

from order_lifecycle.core.errors import ExternalServiceError
from order_lifecycle.core.logger import setup_logger

logger = setup_logger(__name__)


class ProviderClient:
    """Async HTTP client wrapper that turns transport failures into ExternalServiceError."""

    provider = "provider"

    def __init__(
        self,
        base_url: str,
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _send(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """
        Send a request and return the decoded JSON body.

        Raises:
            ExternalServiceError: PROVIDER_UNAVAILABLE (retryable) on timeouts,
                connection failures and 5xx answers; PROVIDER_ERROR on 4xx.
        """
        try:
            response = await self.client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            logger.warning(f"{self.provider} {method} {path} timed out: {e}")
            raise ExternalServiceError(
                "PROVIDER_UNAVAILABLE",
                f"{self.provider} did not answer in time",
                retryable=True,
                timeout=True,
            ) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            body = _safe_json(e.response)
            if status >= 500:
                logger.warning(f"{self.provider} {method} {path} failed with HTTP {status}")
                raise ExternalServiceError(
                    "PROVIDER_UNAVAILABLE",
                    f"{self.provider} returned HTTP {status}",
                    retryable=True,
                    details={"status_code": status, "body": body},
                ) from e
            logger.error(f"{self.provider} {method} {path} rejected with HTTP {status}: {body}")
            raise ExternalServiceError(
                "PROVIDER_ERROR",
                _provider_message(body) or f"{self.provider} returned HTTP {status}",
                details={"status_code": status, "body": body},
            ) from e
        except httpx.TransportError as e:
            logger.warning(f"{self.provider} {method} {path} transport error: {e}")
            raise ExternalServiceError(
                "PROVIDER_UNAVAILABLE",
                f"Could not reach {self.provider}",
                retryable=True,
            ) from e

        return _safe_json(response)


def _safe_json(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {"raw": response.text}
    return data if isinstance(data, dict) else {"data": data}


def _provider_message(body: Dict[str, Any]) -> Optional[str]:
    # PayPal: {"message": ...}; Stripe: {"error": {"message": ...}}
    error = body.get("error")
    if isinstance(error, dict) and error.get("message"):
        return error["message"]
    return body.get("message")
