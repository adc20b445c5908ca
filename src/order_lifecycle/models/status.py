"""Order lifecycle enumerations and the coarse/fine status mirror."""

from enum import Enum
from typing import Dict, Optional


class OrderStatus(str, Enum):
    """Fine-grained order lifecycle status (``orders.order_status``)."""

    CREATED = "created"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_FAILED = "payment_failed"
    PAID = "paid"
    VALIDATION_IN_PROGRESS = "validation_in_progress"
    VALIDATED = "validated"
    PREPARING = "preparing"
    SHIPPED = "shipped"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    DELIVERY_FAILED = "delivery_failed"
    PARTIALLY_DELIVERED = "partially_delivered"
    RETURN_REQUESTED = "return_requested"
    RETURNED = "returned"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    CANCELLED = "cancelled"
    ARCHIVED = "archived"


class CoarseStatus(str, Enum):
    """Coarse payment-level status (``orders.status``)."""

    PENDING = "pending"
    PAYMENT_FAILED = "payment_failed"
    PAID = "paid"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class StatusActor(str, Enum):
    """Who triggered a status change."""

    SYSTEM = "system"
    ADMIN = "admin"
    CUSTOMER = "customer"
    WEBHOOK = "webhook"
    SCHEDULER = "scheduler"


class AdminPermission(str, Enum):
    """Admin permission levels required by transitions."""

    READ_ONLY = "read_only"
    OPERATIONS = "operations"
    FULL_ACCESS = "full_access"


PERMISSION_RANK: Dict[AdminPermission, int] = {
    AdminPermission.READ_ONLY: 0,
    AdminPermission.OPERATIONS: 1,
    AdminPermission.FULL_ACCESS: 2,
}


class AnomalyType(str, Enum):
    PAYMENT = "payment"
    STOCK = "stock"
    DELIVERY = "delivery"
    FRAUD = "fraud"
    TECHNICAL = "technical"
    CUSTOMER = "customer"
    CARRIER = "carrier"


class AnomalySeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def needs_attention(self) -> bool:
        return self in (AnomalySeverity.HIGH, AnomalySeverity.CRITICAL)


# Statuses a carrier event may move an order to, ranked along the shipment.
# A failed attempt shares its rank with in_transit so redelivery can follow it.
SHIPPING_PROGRESS: Dict[OrderStatus, int] = {
    OrderStatus.SHIPPED: 1,
    OrderStatus.IN_TRANSIT: 2,
    OrderStatus.DELIVERY_FAILED: 2,
    OrderStatus.DELIVERED: 3,
    OrderStatus.RETURNED: 4,
}

SHIPPING_STATUSES = frozenset(SHIPPING_PROGRESS)


def is_shipping_regression(current: str, target: OrderStatus) -> bool:
    """True when ``target`` lies earlier along the shipment than ``current``."""
    try:
        current_rank = SHIPPING_PROGRESS.get(OrderStatus(current))
    except ValueError:
        return False
    return current_rank is not None and SHIPPING_PROGRESS[target] < current_rank


TERMINAL_STATUSES = frozenset(
    {OrderStatus.CANCELLED, OrderStatus.REFUNDED, OrderStatus.ARCHIVED}
)

# None means the coarse status is left as it is.
COARSE_STATUS_BY_ORDER_STATUS: Dict[OrderStatus, Optional[CoarseStatus]] = {
    OrderStatus.CREATED: CoarseStatus.PENDING,
    OrderStatus.PAYMENT_PENDING: CoarseStatus.PENDING,
    OrderStatus.PAYMENT_FAILED: CoarseStatus.PAYMENT_FAILED,
    OrderStatus.PAID: CoarseStatus.PAID,
    OrderStatus.VALIDATION_IN_PROGRESS: CoarseStatus.PAID,
    OrderStatus.VALIDATED: CoarseStatus.PAID,
    OrderStatus.PREPARING: CoarseStatus.PAID,
    OrderStatus.SHIPPED: CoarseStatus.PAID,
    OrderStatus.IN_TRANSIT: CoarseStatus.PAID,
    OrderStatus.DELIVERED: CoarseStatus.PAID,
    OrderStatus.DELIVERY_FAILED: CoarseStatus.PAID,
    OrderStatus.PARTIALLY_DELIVERED: CoarseStatus.PAID,
    OrderStatus.RETURN_REQUESTED: CoarseStatus.PAID,
    OrderStatus.RETURNED: CoarseStatus.PAID,
    OrderStatus.PARTIALLY_REFUNDED: CoarseStatus.PAID,
    OrderStatus.REFUNDED: CoarseStatus.REFUNDED,
    OrderStatus.CANCELLED: CoarseStatus.CANCELLED,
    OrderStatus.ARCHIVED: None,
}


def coarse_status_for(order_status: OrderStatus, current: Optional[str] = None) -> Optional[str]:
    """Return the coarse status that mirrors ``order_status``.

    Falls back to ``current`` for statuses that leave the coarse field alone.
    """
    mapped = COARSE_STATUS_BY_ORDER_STATUS.get(OrderStatus(order_status))
    if mapped is None:
        return current
    return mapped.value


def parse_order_status(value: str) -> Optional[OrderStatus]:
    """Parse a status string case-insensitively, None when unknown."""
    if value is None:
        return None
    try:
        return OrderStatus(str(value).strip().lower())
    except ValueError:
        return None
