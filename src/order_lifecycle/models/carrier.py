"""Pydantic models for carrier tracking webhooks.

Each carrier posts its own JSON shape. Every payload model knows how to turn
itself into the canonical ``CarrierEvent``; ``PAYLOAD_MODELS`` is the single
lookup used to pick a parser for a carrier identifier.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, Field


class Carrier(str, Enum):
    DHL = "dhl"
    COLISSIMO = "colissimo"
    CHRONOPOST = "chronopost"
    MONDIAL_RELAY = "mondialrelay"
    UPS = "ups"
    FEDEX = "fedex"
    GENERIC = "generic"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Carrier":
        """Unknown or empty identifiers fall back to the generic carrier."""
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.GENERIC


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CarrierEvent(BaseModel):
    """Carrier-independent shipping event."""

    carrier: Carrier
    event_type: str
    tracking_number: str
    status: str
    timestamp: str
    location: Optional[str] = None
    details: Optional[str] = None
    raw_payload: Dict[str, Any] = Field(default_factory=dict, repr=False)

    @property
    def dedupe_key(self) -> str:
        return f"{self.carrier.value}:{self.tracking_number}:{self.event_type}"


class CarrierPayload(BaseModel):
    """Base for carrier payloads. Unknown keys are kept."""

    class Config:
        extra = "allow"

    def to_event(self, carrier: Carrier) -> CarrierEvent:
        raise NotImplementedError


# ==============================================================================
# DHL Shipment Tracking API
# ==============================================================================


class DHLServiceArea(BaseModel):
    description: Optional[str] = None

    class Config:
        extra = "allow"


class DHLEvent(BaseModel):
    typeCode: Optional[str] = None
    description: Optional[str] = None
    date: Optional[str] = None
    serviceArea: Optional[DHLServiceArea] = None

    class Config:
        extra = "allow"


class DHLShipment(BaseModel):
    id: Optional[str] = None
    events: List[DHLEvent] = Field(min_length=1)

    class Config:
        extra = "allow"


class DHLPayload(CarrierPayload):
    shipments: List[DHLShipment] = Field(min_length=1)

    def to_event(self, carrier: Carrier) -> CarrierEvent:
        shipment = self.shipments[0]
        event = shipment.events[0]
        return CarrierEvent(
            carrier=Carrier.DHL,
            event_type=event.typeCode or "unknown",
            tracking_number=shipment.id or "",
            status=event.description or "",
            timestamp=event.date or _now_iso(),
            location=event.serviceArea.description if event.serviceArea else None,
            details=event.description,
            raw_payload=self.model_dump(),
        )


# ==============================================================================
# Colissimo
# ==============================================================================


class ColissimoEvent(BaseModel):
    code: Optional[str] = None
    label: Optional[str] = None
    date: Optional[str] = None

    class Config:
        extra = "allow"


class ColissimoPayload(CarrierPayload):
    event: Optional[ColissimoEvent] = None
    eventCode: Optional[str] = None
    parcelnumber: Optional[str] = None
    trackingNumber: Optional[str] = None
    status: Optional[str] = None
    timestamp: Optional[str] = None
    location: Optional[str] = None

    def to_event(self, carrier: Carrier) -> CarrierEvent:
        event = self.event or ColissimoEvent()
        return CarrierEvent(
            carrier=Carrier.COLISSIMO,
            event_type=event.code or self.eventCode or "unknown",
            tracking_number=self.parcelnumber or self.trackingNumber or "",
            status=event.label or self.status or "",
            timestamp=event.date or self.timestamp or _now_iso(),
            location=self.location,
            raw_payload=self.model_dump(),
        )


# ==============================================================================
# Chronopost
# ==============================================================================


class ChronopostPayload(CarrierPayload):
    eventCode: Optional[str] = None
    code: Optional[str] = None
    trackingNumber: Optional[str] = None
    skybillNumber: Optional[str] = None
    eventLabel: Optional[str] = None
    label: Optional[str] = None
    eventDate: Optional[str] = None
    location: Optional[str] = None

    def to_event(self, carrier: Carrier) -> CarrierEvent:
        return CarrierEvent(
            carrier=Carrier.CHRONOPOST,
            event_type=self.eventCode or self.code or "unknown",
            tracking_number=self.trackingNumber or self.skybillNumber or "",
            status=self.eventLabel or self.label or "",
            timestamp=self.eventDate or _now_iso(),
            location=self.location,
            raw_payload=self.model_dump(),
        )


# ==============================================================================
# Mondial Relay
# ==============================================================================


class MondialRelayPayload(CarrierPayload):
    Stat: Optional[str] = None
    ExpeditionNum: Optional[str] = None
    Libelle: Optional[str] = None
    Date: Optional[str] = None

    def to_event(self, carrier: Carrier) -> CarrierEvent:
        return CarrierEvent(
            carrier=Carrier.MONDIAL_RELAY,
            event_type=self.Stat or "unknown",
            tracking_number=self.ExpeditionNum or "",
            status=self.Libelle or "",
            timestamp=self.Date or _now_iso(),
            raw_payload=self.model_dump(),
        )


# ==============================================================================
# Generic (UPS, FedEx and anything unrecognised)
# ==============================================================================


class GenericPayload(CarrierPayload):
    event_type: Optional[str] = None
    eventType: Optional[str] = None
    tracking_number: Optional[str] = None
    trackingNumber: Optional[str] = None
    status: Optional[str] = None
    timestamp: Optional[str] = None
    location: Optional[str] = None
    details: Optional[str] = None
    description: Optional[str] = None

    def to_event(self, carrier: Carrier) -> CarrierEvent:
        # ups and fedex keep their own identity on the event
        return CarrierEvent(
            carrier=carrier if carrier in (Carrier.UPS, Carrier.FEDEX) else Carrier.GENERIC,
            event_type=self.event_type or self.eventType or "unknown",
            tracking_number=self.tracking_number or self.trackingNumber or "",
            status=self.status or "",
            timestamp=self.timestamp or _now_iso(),
            location=self.location,
            details=self.details or self.description,
            raw_payload=self.model_dump(),
        )


PAYLOAD_MODELS: Dict[Carrier, Type[CarrierPayload]] = {
    Carrier.DHL: DHLPayload,
    Carrier.COLISSIMO: ColissimoPayload,
    Carrier.CHRONOPOST: ChronopostPayload,
    Carrier.MONDIAL_RELAY: MondialRelayPayload,
    Carrier.UPS: GenericPayload,
    Carrier.FEDEX: GenericPayload,
    Carrier.GENERIC: GenericPayload,
}
