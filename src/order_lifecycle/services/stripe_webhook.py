"""Stripe webhook event processing."""

import json
from typing import Any, Dict, Optional

from order_lifecycle.core.errors import OrderLifecycleError
from order_lifecycle.core.event_logger import WebhookEventLogger
from order_lifecycle.core.logger import setup_logger
from order_lifecycle.core.monitoring import capture_exception, set_webhook_context
from order_lifecycle.core.signature import validate_webhook_request
from order_lifecycle.db.models import Order
from order_lifecycle.db.repository import OrderRepository
from order_lifecycle.models.order import WebhookResult
from order_lifecycle.models.status import (
    AnomalySeverity,
    AnomalyType,
    CoarseStatus,
    OrderStatus,
    StatusActor,
)
from order_lifecycle.services.anomaly_manager import AnomalyManager
from order_lifecycle.services.payment_verifier import PaymentVerifier

logger = setup_logger(__name__)

# Settlement refusals that need a human, answered 200 so Stripe stops retrying
PAYMENT_ANOMALY_TITLES = {
    "AMOUNT_MISMATCH": "Stripe: Amount mismatch",
    "PAYMENT_ORDER_MISMATCH": "Stripe: Payment for another order",
}


class StripeWebhookHandler:
    """Applies Stripe Checkout and PaymentIntent events to orders."""

    def __init__(
        self,
        repository: OrderRepository,
        verifier: PaymentVerifier,
        anomaly_manager: AnomalyManager,
        webhook_secret: Optional[str] = None,
        event_logger: Optional[WebhookEventLogger] = None,
    ):
        self.repository = repository
        self.verifier = verifier
        self.anomaly_manager = anomaly_manager
        self.webhook_secret = webhook_secret
        self.event_logger = event_logger

    async def handle(self, raw_body: bytes, signature_header: Optional[str]) -> WebhookResult:
        """
        Verify and process one Stripe event.

        Returns:
            400 for bad signatures or bodies, 200 otherwise (including event
            types this service does not act on)
        """
        is_valid, error = validate_webhook_request(raw_body, signature_header, self.webhook_secret)
        if not is_valid:
            return WebhookResult(http_status=400, body={"success": False, "error": error})

        try:
            event = json.loads(raw_body)
        except ValueError:
            event = None
        if not isinstance(event, dict):
            return WebhookResult(http_status=400, body={"success": False, "error": "Invalid JSON body"})

        event_type = event.get("type", "unknown")
        obj = (event.get("data") or {}).get("object") or {}
        set_webhook_context("stripe", event_type=event_type)
        logger.info(f"Stripe event received: {event_type} ({event.get('id')})")

        if event_type == "checkout.session.completed":
            result = await self._session_completed(obj)
        elif event_type == "checkout.session.expired":
            result = await self._close_pending(
                obj, OrderStatus.CANCELLED, CoarseStatus.CANCELLED, "SESSION_EXPIRED", "Checkout session expired"
            )
        elif event_type == "payment_intent.payment_failed":
            result = await self._payment_failed(obj)
        else:
            result = WebhookResult(http_status=200, body={"received": True, "ignored": event_type})

        if self.event_logger:
            self.event_logger.log_event("stripe", event, processing_status={"http_status": result.http_status, **result.body})
        return result

    async def _find_order(self, obj: Dict[str, Any]) -> Optional[Order]:
        order_id = (obj.get("metadata") or {}).get("order_id") or obj.get("client_reference_id")
        if order_id:
            order = await self.repository.get_order(order_id)
            if order is not None:
                return order
        if obj.get("object") == "checkout.session" and obj.get("id"):
            return await self.repository.get_order_by_stripe_session(obj["id"])
        return None

    async def _session_completed(self, session: Dict[str, Any]) -> WebhookResult:
        order = await self._find_order(session)
        if order is None:
            logger.warning(f"No order for checkout session {session.get('id')}")
            return WebhookResult(http_status=200, body={"received": True, "order_found": False})

        if order.status == CoarseStatus.PAID.value:
            return WebhookResult(http_status=200, body={"received": True, "order_id": order.id, "message": "Payment already processed"})
        if session.get("payment_status") != "paid":
            # Async payment methods complete later through another event
            return WebhookResult(http_status=200, body={"received": True, "order_id": order.id, "payment_status": session.get("payment_status")})

        try:
            result = await self.verifier.settle_stripe_session(
                order, session, changed_by=StatusActor.WEBHOOK, reason_code="STRIPE_WEBHOOK"
            )
        except OrderLifecycleError as e:
            logger.error(f"Stripe settlement failed for order {order.id}: {e.code} {e.message}", extra={"order_id": order.id})
            capture_exception(e, context={"order_id": order.id, "session_id": session.get("id")})
            if e.code in PAYMENT_ANOMALY_TITLES:
                await self.anomaly_manager.record(
                    order.id,
                    AnomalyType.PAYMENT,
                    title=PAYMENT_ANOMALY_TITLES[e.code],
                    severity=AnomalySeverity.HIGH,
                    description=e.message,
                    detected_by="webhook",
                    metadata={"session_id": session.get("id")},
                    source_event_key=f"stripe:{session.get('id')}:{e.code.lower()}",
                )
                return WebhookResult(http_status=200, body={"received": True, "order_id": order.id, "error": e.code})
            raise

        return WebhookResult(http_status=200, body={"received": True, **result.model_dump()})

    async def _close_pending(
        self,
        obj: Dict[str, Any],
        order_status: OrderStatus,
        coarse: CoarseStatus,
        reason_code: str,
        reason_message: str,
    ) -> WebhookResult:
        order = await self._find_order(obj)
        if order is None:
            return WebhookResult(http_status=200, body={"received": True, "order_found": False})

        applied, _ = await self.repository.compare_and_set(
            order.id,
            expected={"status": CoarseStatus.PENDING.value},
            values={"status": coarse.value, "order_status": order_status.value},
        )
        if not applied:
            logger.info(f"Order {order.id} no longer pending, ignoring {reason_code}", extra={"order_id": order.id})
            return WebhookResult(http_status=200, body={"received": True, "order_id": order.id, "updated": False})

        try:
            await self.repository.add_history(
                order.id,
                previous_status=order.order_status,
                new_status=order_status.value,
                changed_by=StatusActor.WEBHOOK.value,
                reason_code=reason_code,
                reason_message=reason_message,
                meta={"stripe_object": obj.get("id")},
            )
        except OrderLifecycleError as e:
            logger.error(f"Failed to write history for order {order.id}: {e}", extra={"order_id": order.id})

        logger.info(f"Order {order.id} moved to {order_status.value} ({reason_code})", extra={"order_id": order.id})
        return WebhookResult(http_status=200, body={"received": True, "order_id": order.id, "updated": True})

    async def _payment_failed(self, intent: Dict[str, Any]) -> WebhookResult:
        error = intent.get("last_payment_error") or {}
        result = await self._close_pending(
            intent,
            OrderStatus.PAYMENT_FAILED,
            CoarseStatus.PAYMENT_FAILED,
            "PAYMENT_FAILED",
            error.get("message") or "Payment failed",
        )
        order_id = result.body.get("order_id")
        if result.body.get("updated"):
            await self.anomaly_manager.record(
                order_id,
                AnomalyType.PAYMENT,
                title="Stripe: Payment failed",
                severity=AnomalySeverity.MEDIUM,
                description=error.get("message"),
                detected_by="webhook",
                metadata={"payment_intent": intent.get("id"), "code": error.get("code")},
                source_event_key=f"stripe:{intent.get('id')}:payment_failed",
            )
        return result
