"""Carrier webhook processing.

Applies normalized carrier tracking events to orders. This write path does
not go through the transition table: carriers report facts, and the status
they imply is written with a conditional update on the status that was read.
"""

from datetime import datetime, timezone
from typing import Any, Optional, Tuple

from order_lifecycle.config.constants import (
    NOTIFY_DELIVERY_CONFIRMATION,
    NOTIFY_SHIPPING_UPDATE,
    WEBHOOK_WRITE_ATTEMPTS,
)
from order_lifecycle.core.errors import ConflictError, NotFoundError, OrderLifecycleError, PersistenceError
from order_lifecycle.core.event_logger import WebhookEventLogger
from order_lifecycle.core.logger import setup_logger
from order_lifecycle.core.monitoring import capture_exception, set_webhook_context
from order_lifecycle.db.base import utcnow
from order_lifecycle.db.models import Order
from order_lifecycle.db.repository import OrderRepository
from order_lifecycle.handlers.carriers import StatusMapping, map_carrier_event, parse_carrier_payload
from order_lifecycle.integrations.notifier import NotificationDispatcher
from order_lifecycle.models.carrier import Carrier, CarrierEvent
from order_lifecycle.models.order import WebhookResult
from order_lifecycle.models.status import TERMINAL_STATUSES, OrderStatus, StatusActor, is_shipping_regression
from order_lifecycle.services.anomaly_manager import AnomalyManager

logger = setup_logger(__name__)

NOTIFICATION_BY_STATUS = {
    OrderStatus.DELIVERED: NOTIFY_DELIVERY_CONFIRMATION,
    OrderStatus.DELIVERY_FAILED: NOTIFY_SHIPPING_UPDATE,
}


def parse_event_timestamp(value: Optional[str]) -> datetime:
    """Carrier timestamp as naive UTC; unparseable values fall back to now."""
    if not value:
        return utcnow()
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable carrier timestamp '{value}', using now")
        return utcnow()
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class CarrierWebhookProcessor:
    """Turns carrier tracking webhooks into order status changes, anomalies and emails."""

    def __init__(
        self,
        repository: OrderRepository,
        anomaly_manager: AnomalyManager,
        notifier: NotificationDispatcher,
        event_logger: Optional[WebhookEventLogger] = None,
        write_attempts: int = WEBHOOK_WRITE_ATTEMPTS,
    ):
        self.repository = repository
        self.anomaly_manager = anomaly_manager
        self.notifier = notifier
        self.event_logger = event_logger
        self.write_attempts = write_attempts

    async def process(self, carrier_name: Optional[str], payload: Any) -> WebhookResult:
        """
        Process one carrier webhook.

        Args:
            carrier_name: Identifier from the URL or x-carrier header
            payload: Decoded JSON body

        Returns:
            400 unparseable payload, 404 unknown tracking number, 409 when
            concurrent writers kept moving the order, 500 on storage errors,
            200 otherwise
        """
        carrier = Carrier.parse(carrier_name)
        try:
            result = await self._process(carrier, payload)
        except ConflictError as e:
            result = WebhookResult(http_status=409, body=e.to_dict())
        except PersistenceError as e:
            capture_exception(e, context={"carrier": carrier.value})
            result = WebhookResult(http_status=500, body=e.to_dict())

        if self.event_logger:
            self.event_logger.log_event(
                carrier.value,
                payload,
                processing_status={"http_status": result.http_status, **result.body},
            )
        return result

    async def _process(self, carrier: Carrier, payload: Any) -> WebhookResult:
        event = parse_carrier_payload(carrier, payload)
        if event is None or not event.tracking_number:
            logger.warning(f"Could not parse {carrier.value} webhook or missing tracking number")
            return WebhookResult(
                http_status=400,
                body={"success": False, "error": "Invalid webhook payload or missing tracking number"},
            )

        set_webhook_context(carrier.value, event_type=event.event_type, tracking_number=event.tracking_number)
        log_extra = {"carrier": carrier.value, "tracking_number": event.tracking_number}
        logger.info(f"Carrier event {event.event_type} for {event.tracking_number}", extra=log_extra)

        order = await self.repository.get_order_by_tracking_number(event.tracking_number)
        if order is None:
            logger.warning(f"No order for tracking number {event.tracking_number}", extra=log_extra)
            return WebhookResult(
                http_status=404,
                body={"success": False, "error": "Order not found for this tracking number"},
            )

        mapping = map_carrier_event(event)
        if mapping is None:
            logger.info(f"No status mapping for {carrier.value} event {event.event_type}", extra=log_extra)
            return WebhookResult(
                http_status=200,
                body={
                    "success": True,
                    "message": "Event received but no status update needed",
                    "event_type": event.event_type,
                },
            )

        updated, previous = await self._apply_status(order, event, mapping.status)

        anomaly_created = False
        if mapping.create_anomaly:
            anomaly_created = await self._record_anomaly(order, event, mapping)

        if updated and mapping.status in NOTIFICATION_BY_STATUS:
            self.notifier.notify(NOTIFICATION_BY_STATUS[mapping.status], order.id)

        return WebhookResult(
            http_status=200,
            body={
                "success": True,
                "order_id": order.id,
                "previous_status": previous,
                "new_status": mapping.status.value if updated else previous,
                "carrier": event.carrier.value,
                "status_updated": updated,
                "anomaly_created": anomaly_created,
            },
        )

    async def _apply_status(self, order: Order, event: CarrierEvent, target: OrderStatus) -> Tuple[bool, str]:
        """
        Write ``target`` unless the order is already there, closed, or further along the shipment.

        Returns:
            (updated, previous_status)
        """
        current = order.order_status
        values = {"order_status": target.value}
        if target == OrderStatus.DELIVERED:
            values["actual_delivery"] = parse_event_timestamp(event.timestamp)

        for attempt in range(1, self.write_attempts + 1):
            if current == target.value:
                logger.info(f"Order {order.id} already {current}, duplicate carrier event", extra={"order_id": order.id})
                return False, current
            if current in {status.value for status in TERMINAL_STATUSES}:
                logger.warning(
                    f"Order {order.id} is {current}, ignoring carrier status {target.value}",
                    extra={"order_id": order.id},
                )
                return False, current
            if is_shipping_regression(current, target):
                logger.info(
                    f"Order {order.id} is {current}, ignoring late carrier status {target.value}",
                    extra={"order_id": order.id},
                )
                return False, current

            applied, _ = await self.repository.compare_and_set(
                order.id,
                expected={"order_status": current},
                values=values,
            )
            if applied:
                logger.info(
                    f"Order {order.id} moved {current} -> {target.value} by {event.carrier.value}",
                    extra={"order_id": order.id},
                )
                await self._append_history(order.id, current, target, event)
                return True, current

            latest = await self.repository.get_order(order.id)
            if latest is None:
                raise NotFoundError("ORDER_NOT_FOUND", f"Order {order.id} disappeared")
            logger.info(
                f"Order {order.id} changed to {latest.order_status} concurrently (attempt {attempt})",
                extra={"order_id": order.id},
            )
            current = latest.order_status

        raise ConflictError(
            "CONCURRENT_MODIFICATION",
            f"Order {order.id} kept changing, carrier update not applied",
        )

    async def _append_history(self, order_id: str, previous: str, target: OrderStatus, event: CarrierEvent) -> None:
        try:
            await self.repository.add_history(
                order_id,
                previous_status=previous,
                new_status=target.value,
                changed_by=StatusActor.WEBHOOK.value,
                reason_code=f"CARRIER_{event.carrier.value.upper()}_{event.event_type}",
                reason_message=event.status or event.details,
                meta={
                    "carrier": event.carrier.value,
                    "event_type": event.event_type,
                    "location": event.location,
                    "timestamp": event.timestamp,
                },
            )
        except OrderLifecycleError as e:
            logger.error(f"Failed to write carrier history for order {order_id}: {e}", extra={"order_id": order_id})
            capture_exception(e, context={"order_id": order_id, "step": "carrier_history"})

    async def _record_anomaly(self, order: Order, event: CarrierEvent, mapping: StatusMapping) -> bool:
        description = f"{event.carrier.value.upper()}: {event.status}"
        if event.location:
            description += f" - {event.location}"

        _, created = await self.anomaly_manager.record(
            order.id,
            mapping.anomaly_type,
            title=mapping.anomaly_title,
            severity=mapping.anomaly_severity,
            description=description,
            detected_by=StatusActor.WEBHOOK.value,
            metadata={
                "carrier": event.carrier.value,
                "event_type": event.event_type,
                "tracking_number": event.tracking_number,
                "location": event.location,
                "raw_event": event.raw_payload,
            },
            source_event_key=event.dedupe_key,
        )
        return created
