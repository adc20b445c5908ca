"""Carrier webhook handlers.

Two stages per carrier: ``parse_carrier_payload`` turns the carrier's JSON
into a ``CarrierEvent``; ``map_carrier_event`` translates the carrier's
native code into one of the shipping statuses, optionally asking for an
anomaly to be raised.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from order_lifecycle.core.logger import setup_logger
from order_lifecycle.models.carrier import PAYLOAD_MODELS, Carrier, CarrierEvent
from order_lifecycle.models.status import SHIPPING_STATUSES, AnomalySeverity, AnomalyType, OrderStatus

logger = setup_logger(__name__)


@dataclass(frozen=True)
class StatusMapping:
    status: OrderStatus
    create_anomaly: bool = False
    anomaly_type: AnomalyType = AnomalyType.DELIVERY
    anomaly_severity: AnomalySeverity = AnomalySeverity.MEDIUM
    anomaly_title: str = "Delivery issue"

    def __post_init__(self):
        if self.status not in SHIPPING_STATUSES:
            raise ValueError(f"{self.status.value} is not a shipping status")


def _anomaly(status, anomaly_type, severity, title) -> StatusMapping:
    return StatusMapping(
        status=status,
        create_anomaly=True,
        anomaly_type=anomaly_type,
        anomaly_severity=severity,
        anomaly_title=title,
    )


DHL_MAPPINGS: Dict[str, StatusMapping] = {
    "PU": StatusMapping(OrderStatus.SHIPPED),  # Picked up
    "DF": StatusMapping(OrderStatus.IN_TRANSIT),  # Departed facility
    "AR": StatusMapping(OrderStatus.IN_TRANSIT),  # Arrived at facility
    "WC": StatusMapping(OrderStatus.IN_TRANSIT),  # With delivery courier
    "OK": StatusMapping(OrderStatus.DELIVERED),
    "CA": _anomaly(OrderStatus.DELIVERY_FAILED, AnomalyType.DELIVERY, AnomalySeverity.HIGH, "DHL: Delivery failed"),
    "NH": _anomaly(OrderStatus.DELIVERY_FAILED, AnomalyType.DELIVERY, AnomalySeverity.MEDIUM, "DHL: No one home"),
    "RT": StatusMapping(OrderStatus.RETURNED),  # Returned to shipper
}

COLISSIMO_MAPPINGS: Dict[str, StatusMapping] = {
    "PRIS_EN_CHARGE": StatusMapping(OrderStatus.SHIPPED),
    "EN_COURS_ACHEMINEMENT": StatusMapping(OrderStatus.IN_TRANSIT),
    "EN_LIVRAISON": StatusMapping(OrderStatus.IN_TRANSIT),
    "LIVRE": StatusMapping(OrderStatus.DELIVERED),
    "AVISEE": _anomaly(
        OrderStatus.DELIVERY_FAILED, AnomalyType.DELIVERY, AnomalySeverity.MEDIUM, "Colissimo: Delivery notice left"
    ),
    "NON_DISTRIBUABLE": _anomaly(
        OrderStatus.DELIVERY_FAILED, AnomalyType.DELIVERY, AnomalySeverity.HIGH, "Colissimo: Cannot deliver"
    ),
    "RETOUR_EXPEDITEUR": StatusMapping(OrderStatus.RETURNED),
}

CHRONOPOST_MAPPINGS: Dict[str, StatusMapping] = {
    "ENLEVE": StatusMapping(OrderStatus.SHIPPED),
    "EN_COURS": StatusMapping(OrderStatus.IN_TRANSIT),
    "EN_LIVRAISON": StatusMapping(OrderStatus.IN_TRANSIT),
    "LIVRE": StatusMapping(OrderStatus.DELIVERED),
    "INCIDENT": _anomaly(
        OrderStatus.DELIVERY_FAILED, AnomalyType.CARRIER, AnomalySeverity.HIGH, "Chronopost: Delivery incident"
    ),
    "RETOUR": StatusMapping(OrderStatus.RETURNED),
}


def map_generic_status(status_text: str) -> Optional[StatusMapping]:
    """Keyword match on the lower-cased status text. First match wins."""
    normalized = (status_text or "").lower()

    if "picked" in normalized or "shipped" in normalized:
        return StatusMapping(OrderStatus.SHIPPED)
    if "transit" in normalized or "out for delivery" in normalized:
        return StatusMapping(OrderStatus.IN_TRANSIT)
    if "delivered" in normalized:
        return StatusMapping(OrderStatus.DELIVERED)
    if "failed" in normalized or "exception" in normalized:
        return _anomaly(OrderStatus.DELIVERY_FAILED, AnomalyType.DELIVERY, AnomalySeverity.HIGH, "Delivery failed")
    if "return" in normalized:
        return StatusMapping(OrderStatus.RETURNED)
    return None


def _code_table(table: Dict[str, StatusMapping]) -> Callable[[CarrierEvent], Optional[StatusMapping]]:
    return lambda event: table.get(event.event_type)


EVENT_MAPPERS: Dict[Carrier, Callable[[CarrierEvent], Optional[StatusMapping]]] = {
    Carrier.DHL: _code_table(DHL_MAPPINGS),
    Carrier.COLISSIMO: _code_table(COLISSIMO_MAPPINGS),
    Carrier.CHRONOPOST: _code_table(CHRONOPOST_MAPPINGS),
}


def parse_carrier_payload(carrier: Carrier, payload: Any) -> Optional[CarrierEvent]:
    """
    Parse a carrier payload into a canonical event.

    Returns:
        The event, or None when the payload does not have the carrier's shape
    """
    if not isinstance(payload, dict):
        logger.warning(f"{carrier.value} webhook body is not a JSON object")
        return None

    model = PAYLOAD_MODELS.get(carrier, PAYLOAD_MODELS[Carrier.GENERIC])
    try:
        return model.model_validate(payload).to_event(carrier)
    except PydanticValidationError as e:
        logger.warning(f"Could not parse {carrier.value} webhook: {e.error_count()} validation errors")
        return None


def map_carrier_event(event: CarrierEvent) -> Optional[StatusMapping]:
    """Translate an event into a shipping status; None when nothing should change."""
    mapper = EVENT_MAPPERS.get(event.carrier)
    if mapper is None:
        return map_generic_status(event.status)
    return mapper(event)
