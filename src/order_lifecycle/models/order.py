"""Pydantic models for order API requests and results."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field

from .status import AdminPermission, StatusActor


class Principal(BaseModel):
    """Authenticated caller resolved from the bearer credential."""

    actor: StatusActor
    user_id: Optional[str] = None
    permission: Optional[AdminPermission] = None
    internal: bool = False

    @property
    def is_admin(self) -> bool:
        return self.actor == StatusActor.ADMIN

    def owns(self, order) -> bool:
        return self.user_id is not None and order.user_id == self.user_id

    def can_access(self, order) -> bool:
        """Internal callers and admins see every order, customers their own."""
        return self.internal or self.is_admin or self.owns(order)


class StatusUpdateRequest(BaseModel):
    """Body of ``POST /orders/{order_id}/status``."""

    new_status: str = Field(validation_alias=AliasChoices("new_status", "newStatus"))
    actor: Optional[StatusActor] = None
    reason_code: Optional[str] = Field(default=None, validation_alias=AliasChoices("reason_code", "reasonCode"))
    reason_message: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("reason_message", "reasonMessage")
    )
    free_comment: Optional[str] = Field(default=None, validation_alias=AliasChoices("free_comment", "freeComment"))
    metadata: Optional[Dict[str, Any]] = None


class StatusUpdateResult(BaseModel):
    success: bool
    order_id: str
    old_status: Optional[str] = None
    new_status: str
    history_id: Optional[str] = None
    auto_notify: bool = False
    message: Optional[str] = None


class TransitionOut(BaseModel):
    from_status: str
    to_status: str
    requires_permission: str
    is_customer_allowed: bool
    requires_reason: bool
    auto_notify_customer: bool
    description: Optional[str] = None

    class Config:
        from_attributes = True


class HistoryEntryOut(BaseModel):
    id: str
    previous_status: Optional[str] = None
    new_status: str
    changed_by: str
    changed_by_user_id: Optional[str] = None
    reason_code: Optional[str] = None
    reason_message: Optional[str] = None
    free_comment: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="meta")
    created_at: datetime

    class Config:
        from_attributes = True
        populate_by_name = True


class PaypalVerifyRequest(BaseModel):
    """Body of ``POST /payments/paypal/verify``."""

    paypal_order_id: str = Field(validation_alias=AliasChoices("paypal_order_id", "paypalOrderId"))
    order_id: str = Field(validation_alias=AliasChoices("order_id", "orderId"))


class StripeVerifyRequest(BaseModel):
    """Body of ``POST /payments/stripe/verify``."""

    session_id: str = Field(validation_alias=AliasChoices("session_id", "sessionId"))
    order_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("order_id", "orderId"))


class PaymentVerificationResult(BaseModel):
    success: bool
    status: str
    order_id: str
    transaction_id: Optional[str] = None
    message: Optional[str] = None


class AnomalyOut(BaseModel):
    id: str
    order_id: str
    anomaly_type: str
    severity: str
    title: str
    description: Optional[str] = None
    detected_at: datetime
    detected_by: str
    auto_resolved: bool
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None
    resolution_action: Optional[str] = None
    retry_count: int
    max_retries: int
    next_retry_at: Optional[datetime] = None
    escalated: bool
    escalated_at: Optional[datetime] = None
    escalated_to: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="meta")

    class Config:
        from_attributes = True
        populate_by_name = True


class AnomalyListResponse(BaseModel):
    anomalies: List[AnomalyOut] = Field(default_factory=list)
    count: int = 0


class ResolveAnomalyRequest(BaseModel):
    notes: str
    action: Optional[str] = None


class EscalateAnomalyRequest(BaseModel):
    escalated_to: str = Field(validation_alias=AliasChoices("escalated_to", "escalatedTo"))


class WebhookResult(BaseModel):
    """HTTP status and JSON body a webhook endpoint answers with."""

    http_status: int
    body: Dict[str, Any] = Field(default_factory=dict)
