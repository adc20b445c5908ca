"""Handlers module - Carrier payload parsing and status mapping."""

from order_lifecycle.handlers.carriers import map_carrier_event, parse_carrier_payload

__all__ = ["map_carrier_event", "parse_carrier_payload"]
