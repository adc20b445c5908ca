"""Payment settlement against PayPal and Stripe.

Verification is safe to re-enter: an order whose coarse status is already
``paid`` short-circuits before any provider call, and the final write is a
conditional update on the coarse status that was read, so of two racing
callers only one marks the order paid. The other sees zero affected rows and
answers with the same success.
"""

from decimal import Decimal
from typing import Any, Dict, Optional

from order_lifecycle.api.paypal import (
    PayPalClient,
    extract_amount,
    extract_capture_id,
    extract_order_reference,
    extract_payer,
)
from order_lifecycle.api.stripe import StripeClient
from order_lifecycle.config.constants import (
    NOTIFY_ORDER_CONFIRMATION,
    PAYPAL_APPROVED,
    PAYPAL_COMPLETED,
    PAYPAL_DEFAULT_REFERENCE,
    ZERO_DECIMAL_CURRENCIES,
)
from order_lifecycle.core.errors import (
    AuthError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    OrderLifecycleError,
    ValidationError,
)
from order_lifecycle.core.logger import setup_logger
from order_lifecycle.core.monitoring import capture_exception, set_order_context
from order_lifecycle.db.models import Order
from order_lifecycle.db.repository import OrderRepository
from order_lifecycle.integrations.notifier import NotificationDispatcher
from order_lifecycle.models.order import PaymentVerificationResult, Principal
from order_lifecycle.models.status import CoarseStatus, OrderStatus, StatusActor

logger = setup_logger(__name__)

PAYABLE_STATUSES = (CoarseStatus.PENDING.value, CoarseStatus.PAYMENT_FAILED.value)
ALREADY_PROCESSED = "Payment already processed"


def minor_unit_exponent(currency: str) -> int:
    return 0 if (currency or "").upper() in ZERO_DECIMAL_CURRENCIES else 2


def to_major_units(amount: int, currency: str) -> Decimal:
    return Decimal(amount).scaleb(-minor_unit_exponent(currency))


class PaymentVerifier:
    """Reconciles provider payments with local orders."""

    def __init__(
        self,
        repository: OrderRepository,
        notifier: NotificationDispatcher,
        paypal_client: Optional[PayPalClient] = None,
        stripe_client: Optional[StripeClient] = None,
        amount_tolerance: Decimal = Decimal("0.02"),
    ):
        self.repository = repository
        self.notifier = notifier
        self.paypal = paypal_client
        self.stripe = stripe_client
        self.amount_tolerance = Decimal(str(amount_tolerance))

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def _load_order(self, order_id: Optional[str], principal: Optional[Principal], session_id: Optional[str] = None) -> Order:
        if principal is None:
            raise AuthError("UNAUTHORIZED", "Authentication required")

        order = None
        if order_id:
            order = await self.repository.get_order(order_id)
        elif session_id:
            order = await self.repository.get_order_by_stripe_session(session_id)
        if order is None:
            raise NotFoundError("ORDER_NOT_FOUND", f"Order {order_id or session_id} not found")

        if not (principal.internal or principal.owns(order)):
            raise AuthError("FORBIDDEN", "Order belongs to another customer")

        set_order_context(order.id, **{"payment.status": order.status})
        return order

    def _already_paid(self, order: Order, provider_status: str = PAYPAL_COMPLETED) -> PaymentVerificationResult:
        logger.info(f"Order {order.id} already paid, skipping provider", extra={"order_id": order.id})
        return PaymentVerificationResult(
            success=True,
            status=provider_status,
            order_id=order.id,
            transaction_id=order.payment_reference,
            message=ALREADY_PROCESSED,
        )

    def _ensure_payable(self, order: Order) -> None:
        if order.status not in PAYABLE_STATUSES:
            raise ConflictError("ORDER_NOT_PAYABLE", f"Order {order.id} is {order.status} and cannot be paid")

    def check_order_reference(self, order: Order, claimed_order_id: Optional[str]) -> None:
        """Reject a provider payment created for a different local order."""
        if claimed_order_id and claimed_order_id != order.id:
            logger.error(
                f"Payment created for order {claimed_order_id} presented for order {order.id}",
                extra={"order_id": order.id},
            )
            raise ConflictError("PAYMENT_ORDER_MISMATCH", "Payment was made for another order")

    async def check_reference_unused(self, order: Order, payment_reference: Optional[str]) -> None:
        """Reject a capture or payment intent that already settled another order."""
        if not payment_reference:
            return
        owner = await self.repository.get_order_by_payment_reference(payment_reference)
        if owner is not None and owner.id != order.id:
            logger.error(
                f"Payment {payment_reference} already settles order {owner.id}, refused for order {order.id}",
                extra={"order_id": order.id},
            )
            raise ConflictError("PAYMENT_ORDER_MISMATCH", "This payment has already been applied to another order")

    def check_amount(self, order: Order, value: Any, currency: Optional[str]) -> None:
        """
        Compare a provider amount in major units with the stored minor-unit amount.

        Raises:
            ConflictError: AMOUNT_MISMATCH when currencies differ or the
                difference exceeds the tolerance
        """
        if value is None or not currency:
            raise ConflictError("AMOUNT_MISMATCH", "Provider did not report an amount")
        if currency.upper() != order.currency.upper():
            raise ConflictError(
                "AMOUNT_MISMATCH",
                f"Currency mismatch: paid in {currency.upper()}, order is in {order.currency.upper()}",
            )

        paid = Decimal(str(value))
        expected = to_major_units(order.amount, order.currency)
        if abs(paid - expected) > self.amount_tolerance:
            logger.error(
                f"Amount mismatch on order {order.id}: paid {paid}, expected {expected}",
                extra={"order_id": order.id},
            )
            raise ConflictError("AMOUNT_MISMATCH", f"Paid amount {paid} does not match order total {expected}")

    async def settle(
        self,
        order: Order,
        payment_method: str,
        payment_reference: str,
        payment_details: Dict[str, Any],
        changed_by: StatusActor = StatusActor.SYSTEM,
        reason_code: str = "PAYMENT_CONFIRMED",
        reason_message: str = "Payment confirmed by provider",
        provider_status: str = PAYPAL_COMPLETED,
    ) -> PaymentVerificationResult:
        """
        Mark an order paid with a conditional write on its coarse status.

        Only the caller whose write lands appends history and sends the
        confirmation email. History and notification failures are logged.
        """
        meta = dict(order.meta or {})
        meta["payment"] = payment_details

        applied, _ = await self.repository.compare_and_set(
            order.id,
            expected={"status": order.status},
            values={
                "status": CoarseStatus.PAID.value,
                "order_status": OrderStatus.PAID.value,
                "payment_method": payment_method,
                "payment_reference": payment_reference,
                "meta": meta,
            },
        )

        if not applied:
            latest = await self.repository.get_order(order.id)
            if latest is not None and latest.status == CoarseStatus.PAID.value:
                logger.info(f"Order {order.id} was settled by a concurrent caller", extra={"order_id": order.id})
                return PaymentVerificationResult(
                    success=True,
                    status=provider_status,
                    order_id=order.id,
                    transaction_id=latest.payment_reference,
                    message=ALREADY_PROCESSED,
                )
            raise ConflictError("CONCURRENT_MODIFICATION", f"Order {order.id} changed during payment settlement")

        logger.info(
            f"Order {order.id} marked paid via {payment_method} ({payment_reference})",
            extra={"order_id": order.id},
        )

        try:
            await self.repository.add_history(
                order.id,
                previous_status=order.order_status,
                new_status=OrderStatus.PAID.value,
                changed_by=StatusActor(changed_by).value,
                reason_code=reason_code,
                reason_message=reason_message,
                meta={"payment_method": payment_method, "payment_reference": payment_reference},
            )
        except OrderLifecycleError as e:
            logger.error(f"Failed to write payment history for order {order.id}: {e}", extra={"order_id": order.id})
            capture_exception(e, context={"order_id": order.id, "step": "payment_history"})

        self.notifier.notify(NOTIFY_ORDER_CONFIRMATION, order.id)

        return PaymentVerificationResult(
            success=True,
            status=provider_status,
            order_id=order.id,
            transaction_id=payment_reference,
            message="Payment verified",
        )

    # ------------------------------------------------------------------
    # PayPal
    # ------------------------------------------------------------------

    async def verify_paypal(
        self,
        paypal_order_id: str,
        order_id: str,
        principal: Optional[Principal],
    ) -> PaymentVerificationResult:
        """
        Verify (and capture if needed) a PayPal order, then mark the local order paid.

        Raises:
            AuthError: UNAUTHORIZED, FORBIDDEN
            NotFoundError: ORDER_NOT_FOUND
            ConflictError: AMOUNT_MISMATCH, ORDER_NOT_PAYABLE, PAYMENT_ORDER_MISMATCH
            ExternalServiceError: PROVIDER_UNAVAILABLE (retryable), PROVIDER_ERROR
        """
        if not paypal_order_id:
            raise ValidationError("MISSING_PAYPAL_ORDER_ID", "paypal_order_id is required")

        order = await self._load_order(order_id, principal)
        if order.status == CoarseStatus.PAID.value:
            return self._already_paid(order)
        self._ensure_payable(order)

        if self.paypal is None:
            raise ExternalServiceError("PROVIDER_NOT_CONFIGURED", "PayPal is not configured")

        paypal_order = await self.paypal.get_order(paypal_order_id)
        reference = extract_order_reference(paypal_order)
        if reference != PAYPAL_DEFAULT_REFERENCE:
            self.check_order_reference(order, reference)
        amount = extract_amount(paypal_order) or {}
        self.check_amount(order, amount.get("value"), amount.get("currency_code"))

        status = paypal_order.get("status")
        if status == PAYPAL_APPROVED:
            try:
                paypal_order = await self.paypal.capture_order(paypal_order_id)
            except ExternalServiceError as e:
                if e.code != "ORDER_ALREADY_CAPTURED":
                    raise
                logger.info(f"PayPal order {paypal_order_id} captured concurrently, re-fetching")
                paypal_order = await self.paypal.get_order(paypal_order_id)
            status = paypal_order.get("status")

        if status != PAYPAL_COMPLETED:
            logger.info(f"PayPal order {paypal_order_id} is {status}, not settling", extra={"order_id": order.id})
            return PaymentVerificationResult(
                success=False,
                status=status or "UNKNOWN",
                order_id=order.id,
                message=f"Payment not completed (status: {status})",
            )

        capture_id = extract_capture_id(paypal_order)
        await self.check_reference_unused(order, capture_id or paypal_order_id)
        details = {
            "provider": "paypal",
            "paypal_order_id": paypal_order_id,
            "capture_id": capture_id,
            **extract_payer(paypal_order),
        }
        return await self.settle(
            order,
            payment_method="paypal",
            payment_reference=capture_id or paypal_order_id,
            payment_details=details,
            reason_message="PayPal payment captured",
        )

    # ------------------------------------------------------------------
    # Stripe
    # ------------------------------------------------------------------

    async def verify_stripe(
        self,
        session_id: str,
        principal: Optional[Principal],
        order_id: Optional[str] = None,
    ) -> PaymentVerificationResult:
        """Verify a Stripe Checkout Session and mark the local order paid."""
        if not session_id:
            raise ValidationError("MISSING_SESSION_ID", "session_id is required")

        order = await self._load_order(order_id, principal, session_id=session_id)
        if order.stripe_session_id and order.stripe_session_id != session_id:
            raise ValidationError("SESSION_MISMATCH", "Checkout session does not belong to this order")
        if order.status == CoarseStatus.PAID.value:
            return self._already_paid(order, provider_status="paid")
        self._ensure_payable(order)

        if self.stripe is None:
            raise ExternalServiceError("PROVIDER_NOT_CONFIGURED", "Stripe is not configured")

        session = await self.stripe.retrieve_checkout_session(session_id)
        payment_status = session.get("payment_status")
        if payment_status != "paid":
            return PaymentVerificationResult(
                success=False,
                status=payment_status or "unknown",
                order_id=order.id,
                message=f"Payment not completed (status: {payment_status})",
            )

        return await self.settle_stripe_session(order, session)

    async def settle_stripe_session(
        self,
        order: Order,
        session: Dict[str, Any],
        changed_by: StatusActor = StatusActor.SYSTEM,
        reason_code: str = "PAYMENT_CONFIRMED",
    ) -> PaymentVerificationResult:
        """
        Check a paid Checkout Session belongs to the order and covers its total, then settle.

        A session naming an order (``metadata.order_id`` or
        ``client_reference_id``) must name this one. A session naming none is
        only accepted for the order it was created for.

        Raises:
            ConflictError: PAYMENT_ORDER_MISMATCH, AMOUNT_MISMATCH
        """
        claimed = (session.get("metadata") or {}).get("order_id") or session.get("client_reference_id")
        if claimed:
            self.check_order_reference(order, claimed)
        elif not order.stripe_session_id or order.stripe_session_id != session.get("id"):
            logger.error(
                f"Checkout session {session.get('id')} is not linked to order {order.id}",
                extra={"order_id": order.id},
            )
            raise ConflictError("PAYMENT_ORDER_MISMATCH", "Checkout session was not created for this order")

        currency = session.get("currency") or ""
        amount_total = session.get("amount_total")
        paid = None if amount_total is None else to_major_units(int(amount_total), currency)
        self.check_amount(order, paid, currency)

        reference = session.get("payment_intent") or session.get("id")
        await self.check_reference_unused(order, reference)
        details = {
            "provider": "stripe",
            "session_id": session.get("id"),
            "payment_intent": session.get("payment_intent"),
            "customer_email": (session.get("customer_details") or {}).get("email"),
        }
        return await self.settle(
            order,
            payment_method="stripe",
            payment_reference=reference,
            payment_details=details,
            changed_by=changed_by,
            reason_code=reason_code,
            reason_message="Stripe checkout session paid",
            provider_status="paid",
        )
