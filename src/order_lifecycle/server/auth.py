"""
Authentication

Resolves the ``Authorization: Bearer`` credential into a Principal. The
internal service key identifies trusted backend callers; any other token is
checked against the auth server's user endpoint.
"""

import hmac
from typing import Optional

import httpx
from fastapi import Request

from order_lifecycle.core.errors import AuthError, ExternalServiceError
from order_lifecycle.core.logger import setup_logger
from order_lifecycle.models.order import Principal
from order_lifecycle.models.status import AdminPermission, StatusActor

logger = setup_logger(__name__)

AUTH_TIMEOUT = 5.0


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class PrincipalResolver:
    """Turns bearer tokens into principals."""

    def __init__(
        self,
        internal_service_key: Optional[str] = None,
        auth_url: Optional[str] = None,
        auth_api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.internal_service_key = internal_service_key
        self.auth_url = auth_url.rstrip("/") if auth_url else None
        self.auth_api_key = auth_api_key
        self.transport = transport

    def _is_internal(self, token: str) -> bool:
        if not self.internal_service_key:
            return False
        # Constant-time comparison
        return hmac.compare_digest(token.encode("utf-8"), self.internal_service_key.encode("utf-8"))

    async def resolve(self, authorization: Optional[str]) -> Optional[Principal]:
        """
        Resolve an Authorization header value.

        Returns:
            The principal, or None when no usable credential was sent

        Raises:
            AuthError: UNAUTHORIZED when the token is rejected
            ExternalServiceError: AUTH_UNAVAILABLE when the auth server cannot be reached
        """
        token = extract_bearer_token(authorization)
        if token is None:
            return None

        if self._is_internal(token):
            return Principal(actor=StatusActor.SYSTEM, internal=True)

        if not self.auth_url:
            raise AuthError("UNAUTHORIZED", "Invalid credentials")

        headers = {"Authorization": f"Bearer {token}"}
        if self.auth_api_key:
            headers["apikey"] = self.auth_api_key

        try:
            async with httpx.AsyncClient(timeout=AUTH_TIMEOUT, transport=self.transport) as client:
                response = await client.get(f"{self.auth_url}/auth/v1/user", headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Auth server unreachable: {e}")
            raise ExternalServiceError("AUTH_UNAVAILABLE", "Authentication service unavailable", retryable=True) from e

        if response.status_code in (401, 403):
            raise AuthError("UNAUTHORIZED", "Invalid or expired token")
        if response.status_code >= 400:
            logger.error(f"Auth server returned HTTP {response.status_code}")
            raise ExternalServiceError(
                "AUTH_UNAVAILABLE",
                "Authentication service unavailable",
                retryable=response.status_code >= 500,
            )

        user = response.json()
        user_id = user.get("id")
        if not user_id:
            raise AuthError("UNAUTHORIZED", "Invalid or expired token")

        app_metadata = user.get("app_metadata") or {}
        if app_metadata.get("role") == "admin":
            try:
                permission = AdminPermission(app_metadata.get("admin_permission") or AdminPermission.OPERATIONS)
            except ValueError:
                logger.warning(f"Unknown admin permission for user {user_id}, using read_only")
                permission = AdminPermission.READ_ONLY
            return Principal(actor=StatusActor.ADMIN, user_id=user_id, permission=permission)

        return Principal(actor=StatusActor.CUSTOMER, user_id=user_id)


async def get_principal(request: Request) -> Optional[Principal]:
    """FastAPI dependency: the caller's principal, None when anonymous."""
    resolver: PrincipalResolver = request.app.state.services.principal_resolver
    return await resolver.resolve(request.headers.get("authorization"))


async def require_principal(request: Request) -> Principal:
    """FastAPI dependency: like get_principal but anonymous callers get 401."""
    principal = await get_principal(request)
    if principal is None:
        raise AuthError("UNAUTHORIZED", "Authentication required")
    return principal


def require_staff(principal: Principal) -> None:
    """Only internal callers and admins may manage anomalies."""
    if not (principal.internal or principal.is_admin):
        raise AuthError("FORBIDDEN", "Admin access required")
