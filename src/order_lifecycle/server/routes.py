"""API routes for the order lifecycle service."""

import json
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse

from order_lifecycle.config.constants import NOTIFY_ORDER_STATUS
from order_lifecycle.core.errors import AuthError, NotFoundError
from order_lifecycle.core.logger import setup_logger
from order_lifecycle.models.order import (
    AnomalyListResponse,
    AnomalyOut,
    EscalateAnomalyRequest,
    HistoryEntryOut,
    PaymentVerificationResult,
    PaypalVerifyRequest,
    Principal,
    ResolveAnomalyRequest,
    StatusUpdateRequest,
    StatusUpdateResult,
    StripeVerifyRequest,
    TransitionOut,
)
from order_lifecycle.models.status import StatusActor
from order_lifecycle.server.auth import require_principal, require_staff

logger = setup_logger(__name__)
router = APIRouter()


def get_services(request: Request):
    return request.app.state.services


async def _load_accessible_order(services, order_id: str, principal: Principal):
    order = await services.repository.get_order(order_id)
    if order is None:
        raise NotFoundError("ORDER_NOT_FOUND", f"Order {order_id} not found")
    if not principal.can_access(order):
        raise AuthError("FORBIDDEN", "Order belongs to another customer")
    return order


@router.get("/")
async def root() -> dict:
    """Root endpoint with basic service info."""
    return {
        "service": "Order Lifecycle Service",
        "version": "1.0.0",
        "endpoints": {
            "status_update": "POST /orders/{order_id}/status",
            "transitions": "GET /orders/{order_id}/transitions",
            "history": "GET /orders/{order_id}/history",
            "paypal_verify": "POST /payments/paypal/verify",
            "stripe_verify": "POST /payments/stripe/verify",
            "stripe_webhook": "POST /webhooks/stripe",
            "carrier_webhook": "POST /webhooks/carrier/{carrier}",
            "anomalies": "GET /anomalies",
            "health": "GET /health",
            "docs": "GET /docs",
        },
    }


@router.get("/health")
async def health_check(services=Depends(get_services)) -> dict:
    """Health check endpoint for monitoring."""
    settings = services.settings
    health_status = {
        "status": "healthy",
        "service": "order-lifecycle",
        "checks": {
            "paypal": "configured" if settings.paypal_client_id else "not_configured",
            "stripe": "configured" if settings.stripe_secret_key else "not_configured",
            "stripe_webhook_signature": "enabled" if settings.stripe_webhook_secret else "disabled",
            "notifications": "enabled" if services.notifier.enabled else "disabled",
            "pending_notifications": services.notifier.pending_count,
        },
    }
    if services.scheduler is not None:
        health_status["checks"]["escalation_scheduler"] = "running" if services.scheduler.is_running else "stopped"
    return health_status


# ==============================================================================
# Order status
# ==============================================================================


@router.post("/orders/{order_id}/status", response_model=StatusUpdateResult)
async def update_order_status(
    order_id: str,
    body: StatusUpdateRequest,
    request: Request,
    principal: Principal = Depends(require_principal),
    services=Depends(get_services),
) -> StatusUpdateResult:
    """Move an order along the transition table."""
    await _load_accessible_order(services, order_id, principal)

    # Internal callers choose the actor, users act as themselves
    actor = (body.actor or StatusActor.SYSTEM) if principal.internal else principal.actor

    result = await services.status_engine.update_order_status(
        order_id,
        body.new_status,
        actor=actor,
        actor_user_id=principal.user_id,
        reason_code=body.reason_code,
        reason_message=body.reason_message,
        metadata=body.metadata,
        actor_permission=principal.permission,
        free_comment=body.free_comment,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )

    if result.auto_notify and result.history_id:
        services.notifier.notify(
            NOTIFY_ORDER_STATUS,
            order_id,
            {"oldStatus": result.old_status, "newStatus": result.new_status},
        )
    return result


@router.get("/orders/{order_id}/transitions")
async def list_order_transitions(
    order_id: str,
    principal: Principal = Depends(require_principal),
    services=Depends(get_services),
) -> dict:
    """Transitions available from the order's current status."""
    order = await _load_accessible_order(services, order_id, principal)
    transitions = await services.status_engine.list_transitions(order.order_status)
    if principal.actor == StatusActor.CUSTOMER:
        transitions = [t for t in transitions if t.is_customer_allowed]
    return {
        "order_id": order_id,
        "current_status": order.order_status,
        "transitions": [TransitionOut.model_validate(t).model_dump() for t in transitions],
    }


@router.get("/orders/{order_id}/history")
async def get_order_history(
    order_id: str,
    principal: Principal = Depends(require_principal),
    services=Depends(get_services),
) -> dict:
    """Status history, newest first."""
    await _load_accessible_order(services, order_id, principal)
    history = await services.status_engine.get_history(order_id)
    return {
        "order_id": order_id,
        "history": [HistoryEntryOut.model_validate(h).model_dump(mode="json") for h in history],
    }


# ==============================================================================
# Payments
# ==============================================================================


@router.post("/payments/paypal/verify", response_model=PaymentVerificationResult)
async def verify_paypal_payment(
    body: PaypalVerifyRequest,
    principal: Principal = Depends(require_principal),
    services=Depends(get_services),
) -> PaymentVerificationResult:
    """Verify and capture a PayPal order for a local order."""
    return await services.payment_verifier.verify_paypal(body.paypal_order_id, body.order_id, principal)


@router.post("/payments/stripe/verify", response_model=PaymentVerificationResult)
async def verify_stripe_payment(
    body: StripeVerifyRequest,
    principal: Principal = Depends(require_principal),
    services=Depends(get_services),
) -> PaymentVerificationResult:
    """Verify a Stripe Checkout Session for a local order."""
    return await services.payment_verifier.verify_stripe(body.session_id, principal, order_id=body.order_id)


# ==============================================================================
# Webhooks
# ==============================================================================


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    services=Depends(get_services),
):
    """Receive Stripe events."""
    raw_body = await request.body()
    result = await services.stripe_webhook.handle(raw_body, stripe_signature)
    return JSONResponse(status_code=result.http_status, content=result.body)


async def _carrier_webhook(request: Request, carrier: Optional[str], services):
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body) if raw_body else None
    except ValueError:
        logger.warning("Carrier webhook body is not valid JSON")
        payload = None

    carrier = carrier or request.headers.get("x-carrier") or "generic"
    result = await services.carrier_webhook.process(carrier, payload)
    return JSONResponse(status_code=result.http_status, content=result.body)


@router.post("/webhooks/carrier")
async def carrier_webhook(request: Request, services=Depends(get_services)):
    """Receive a carrier tracking event; the carrier comes from the x-carrier header."""
    return await _carrier_webhook(request, None, services)


@router.post("/webhooks/carrier/{carrier}")
async def carrier_webhook_for(carrier: str, request: Request, services=Depends(get_services)):
    """Receive a carrier tracking event for the carrier named in the path."""
    return await _carrier_webhook(request, carrier, services)


# ==============================================================================
# Anomalies
# ==============================================================================


@router.get("/anomalies", response_model=AnomalyListResponse)
async def list_anomalies(
    order_id: Optional[str] = Query(None),
    unresolved_only: bool = Query(False),
    limit: int = Query(100, ge=1, le=500),
    principal: Principal = Depends(require_principal),
    services=Depends(get_services),
) -> AnomalyListResponse:
    require_staff(principal)
    anomalies = await services.anomaly_manager.list_anomalies(
        order_id=order_id, unresolved_only=unresolved_only, limit=limit
    )
    return AnomalyListResponse(
        anomalies=[AnomalyOut.model_validate(a) for a in anomalies],
        count=len(anomalies),
    )


@router.post("/anomalies/{anomaly_id}/resolve", response_model=AnomalyOut)
async def resolve_anomaly(
    anomaly_id: str,
    body: ResolveAnomalyRequest,
    principal: Principal = Depends(require_principal),
    services=Depends(get_services),
) -> AnomalyOut:
    require_staff(principal)
    anomaly = await services.anomaly_manager.resolve(
        anomaly_id,
        resolved_by=principal.user_id or "system",
        notes=body.notes,
        action=body.action,
    )
    return AnomalyOut.model_validate(anomaly)


@router.post("/anomalies/{anomaly_id}/escalate", response_model=AnomalyOut)
async def escalate_anomaly(
    anomaly_id: str,
    body: EscalateAnomalyRequest,
    principal: Principal = Depends(require_principal),
    services=Depends(get_services),
) -> AnomalyOut:
    require_staff(principal)
    anomaly = await services.anomaly_manager.escalate(anomaly_id, body.escalated_to)
    return AnomalyOut.model_validate(anomaly)
