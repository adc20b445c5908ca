"""SQLAlchemy models for the order store."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, utcnow


def new_id() -> str:
    return str(uuid.uuid4())


class Order(Base):
    """
    A customer order.

    ``status`` is the coarse payment-level field, ``order_status`` the fine
    lifecycle status. Both are only changed through conditional updates in
    the repository so that concurrent writers cannot overwrite each other.
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[Optional[str]] = mapped_column(String(36), index=True, nullable=True)

    # Money, integer minor units
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="EUR", nullable=False)

    # Status fields
    status: Mapped[str] = mapped_column(String(32), default="pending", nullable=False, index=True)
    order_status: Mapped[str] = mapped_column(String(32), default="created", nullable=False, index=True)

    # Payment
    stripe_session_id: Mapped[Optional[str]] = mapped_column(String(255), index=True, nullable=True)
    payment_method: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    payment_reference: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)

    # Fraud
    fraud_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    fraud_flags: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    # Addresses and notes
    shipping_address: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    billing_address: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    customer_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    internal_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Delivery
    estimated_delivery: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    actual_delivery: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    carrier: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    tracking_number: Mapped[Optional[str]] = mapped_column(String(100), index=True, nullable=True)
    tracking_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Retry bookkeeping
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Anomaly flags
    has_anomaly: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    anomaly_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    requires_attention: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    attention_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    meta: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class OrderItem(Base):
    """A line of an order. Immutable once created."""

    __tablename__ = "order_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), index=True, nullable=False)
    product_id: Mapped[str] = mapped_column(String(36), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False)
    total_price: Mapped[int] = mapped_column(Integer, nullable=False)
    # name, price, image_url, sku at purchase time
    product_snapshot: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class OrderStatusHistory(Base):
    """Append-only audit trail of status changes."""

    __tablename__ = "order_status_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), index=True, nullable=False)
    previous_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    new_status: Mapped[str] = mapped_column(String(32), nullable=False)
    changed_by: Mapped[str] = mapped_column(String(16), nullable=False)
    changed_by_user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    reason_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    reason_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    free_comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    meta: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)


class OrderAnomaly(Base):
    """An exceptional condition attached to an order."""

    __tablename__ = "order_anomalies"
    __table_args__ = (
        # NULL keys never collide, so only webhook-originated anomalies are deduplicated
        UniqueConstraint("order_id", "source_event_key", name="uq_order_anomalies_source_event"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), index=True, nullable=False)
    anomaly_type: Mapped[str] = mapped_column(String(16), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    detected_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    detected_by: Mapped[str] = mapped_column(String(64), default="system", nullable=False)

    # Resolution
    auto_resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolution_action: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Retry bookkeeping (advisory)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Escalation
    escalated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    escalated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    escalated_to: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    meta: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)
    source_event_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None


class OrderStateTransition(Base):
    """An allowed edge of the order state machine."""

    __tablename__ = "order_state_transitions"
    __table_args__ = (
        UniqueConstraint("from_status", "to_status", name="uq_order_state_transitions_edge"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    from_status: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    to_status: Mapped[str] = mapped_column(String(32), nullable=False)
    requires_permission: Mapped[str] = mapped_column(String(16), default="operations", nullable=False)
    is_customer_allowed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    requires_reason: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    auto_notify_customer: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
