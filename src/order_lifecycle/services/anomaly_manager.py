"""Anomaly recording, scoring, resolution and escalation."""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from order_lifecycle.core.errors import NotFoundError, ValidationError
from order_lifecycle.core.logger import setup_logger
from order_lifecycle.core.monitoring import set_order_context
from order_lifecycle.db.base import utcnow
from order_lifecycle.db.models import OrderAnomaly
from order_lifecycle.db.repository import OrderRepository
from order_lifecycle.models.status import AnomalySeverity, AnomalyType

logger = setup_logger(__name__)

ATTENTION_SEVERITIES = [AnomalySeverity.HIGH.value, AnomalySeverity.CRITICAL.value]

DEFAULT_SEVERITY = {
    AnomalyType.PAYMENT: AnomalySeverity.MEDIUM,
    AnomalyType.STOCK: AnomalySeverity.MEDIUM,
    AnomalyType.DELIVERY: AnomalySeverity.MEDIUM,
    AnomalyType.FRAUD: AnomalySeverity.HIGH,
    AnomalyType.TECHNICAL: AnomalySeverity.HIGH,
    AnomalyType.CUSTOMER: AnomalySeverity.LOW,
    AnomalyType.CARRIER: AnomalySeverity.MEDIUM,
}


def score_severity(anomaly_type: AnomalyType, fraud_score: Optional[int] = None) -> AnomalySeverity:
    """
    Default severity for an anomaly.

    Fraud anomalies with a known score are graded by it (>=80 critical,
    >=60 high, >=30 medium, else low). Everything else uses the per-type
    default.
    """
    anomaly_type = AnomalyType(anomaly_type)
    if anomaly_type == AnomalyType.FRAUD and fraud_score is not None:
        if fraud_score >= 80:
            return AnomalySeverity.CRITICAL
        if fraud_score >= 60:
            return AnomalySeverity.HIGH
        if fraud_score >= 30:
            return AnomalySeverity.MEDIUM
        return AnomalySeverity.LOW
    return DEFAULT_SEVERITY[anomaly_type]


class AnomalyManager:
    """Records exceptional conditions on orders and tracks their resolution."""

    def __init__(
        self,
        repository: OrderRepository,
        retry_base_minutes: int = 15,
        escalation_after_minutes: int = 120,
        escalation_target: str = "operations",
    ):
        self.repository = repository
        self.retry_base_minutes = retry_base_minutes
        self.escalation_after_minutes = escalation_after_minutes
        self.escalation_target = escalation_target

    async def record(
        self,
        order_id: str,
        anomaly_type: AnomalyType,
        title: str,
        severity: Optional[AnomalySeverity] = None,
        description: Optional[str] = None,
        detected_by: str = "system",
        metadata: Optional[Dict[str, Any]] = None,
        source_event_key: Optional[str] = None,
        max_retries: int = 3,
    ) -> Tuple[OrderAnomaly, bool]:
        """
        Record an anomaly and flag its order.

        The order's ``anomaly_count`` is incremented and ``has_anomaly`` set.
        ``requires_attention`` is raised for high and critical anomalies and
        is never lowered here.

        Returns:
            (anomaly, created). created is False when ``source_event_key``
            had already been recorded for the order.
        """
        anomaly_type = AnomalyType(anomaly_type)
        if severity is None:
            fraud_score = None
            if anomaly_type == AnomalyType.FRAUD:
                order = await self.repository.get_order(order_id)
                if order is None:
                    raise NotFoundError("ORDER_NOT_FOUND", f"Order {order_id} not found")
                fraud_score = order.fraud_score
            severity = score_severity(anomaly_type, fraud_score)
        severity = AnomalySeverity(severity)

        fields = {
            "order_id": order_id,
            "anomaly_type": anomaly_type.value,
            "severity": severity.value,
            "title": title,
            "description": description,
            "detected_by": detected_by,
            "meta": metadata or {},
            "source_event_key": source_event_key,
            "max_retries": max_retries,
        }
        attention_reason = title if severity.needs_attention else None

        anomaly, created = await self.repository.insert_anomaly(fields, attention_reason=attention_reason)
        if created:
            set_order_context(order_id, **{"anomaly.severity": severity.value})
            logger.info(
                f"Recorded {severity.value} {anomaly_type.value} anomaly on order {order_id}: {title}",
                extra={"order_id": order_id, "anomaly_id": anomaly.id},
            )
        else:
            logger.info(
                f"Anomaly {source_event_key} already recorded on order {order_id}",
                extra={"order_id": order_id, "anomaly_id": anomaly.id},
            )
        return anomaly, created

    async def _get(self, anomaly_id: str) -> OrderAnomaly:
        anomaly = await self.repository.get_anomaly(anomaly_id)
        if anomaly is None:
            raise NotFoundError("ANOMALY_NOT_FOUND", f"Anomaly {anomaly_id} not found")
        return anomaly

    async def resolve(
        self,
        anomaly_id: str,
        resolved_by: str,
        notes: str,
        action: Optional[str] = None,
        auto_resolved: bool = False,
    ) -> OrderAnomaly:
        """
        Resolve an anomaly. Resolving an already resolved anomaly returns it unchanged.

        The order's ``requires_attention`` flag is cleared once no unresolved
        high or critical anomaly remains on it.
        """
        if not notes or not notes.strip():
            raise ValidationError("NOTES_REQUIRED", "Resolution notes are required")

        resolved = await self.repository.resolve_anomaly(
            anomaly_id,
            {
                "resolved_at": utcnow(),
                "resolved_by": resolved_by,
                "resolution_notes": notes,
                "resolution_action": action,
                "auto_resolved": auto_resolved,
            },
            attention_severities=ATTENTION_SEVERITIES,
        )
        anomaly = await self._get(anomaly_id)
        if resolved:
            logger.info(f"Anomaly {anomaly_id} resolved by {resolved_by}", extra={"order_id": anomaly.order_id})
        else:
            logger.info(f"Anomaly {anomaly_id} was already resolved", extra={"order_id": anomaly.order_id})
        return anomaly

    async def register_retry(self, anomaly_id: str, now: Optional[datetime] = None) -> bool:
        """
        Count one remediation attempt and schedule the next one.

        Nothing is retried here; ``next_retry_at`` is advisory for whatever
        job performs the remediation. The delay doubles with every attempt.

        Returns:
            True when another retry may still be scheduled
        """
        anomaly = await self._get(anomaly_id)
        if anomaly.is_resolved or anomaly.retry_count >= anomaly.max_retries:
            return False

        now = now or utcnow()
        attempts = anomaly.retry_count + 1
        remaining = attempts < anomaly.max_retries
        next_retry_at = None
        if remaining:
            next_retry_at = now + timedelta(minutes=self.retry_base_minutes * 2 ** anomaly.retry_count)

        await self.repository.increment_anomaly_retry(anomaly_id, next_retry_at)
        logger.info(
            f"Anomaly {anomaly_id} retry {attempts}/{anomaly.max_retries}, next at {next_retry_at}",
            extra={"anomaly_id": anomaly_id},
        )
        return remaining

    async def escalate(self, anomaly_id: str, escalated_to: str, now: Optional[datetime] = None) -> OrderAnomaly:
        """Escalate an anomaly. Already escalated anomalies keep their first escalation."""
        await self._get(anomaly_id)
        applied = await self.repository.update_anomaly(
            anomaly_id,
            {"escalated": True, "escalated_at": now or utcnow(), "escalated_to": escalated_to},
            only_if_unset="escalated_at",
        )
        if applied:
            logger.warning(f"Anomaly {anomaly_id} escalated to {escalated_to}", extra={"anomaly_id": anomaly_id})
        return await self._get(anomaly_id)

    async def list_anomalies(
        self,
        order_id: Optional[str] = None,
        unresolved_only: bool = False,
        limit: int = 100,
    ) -> List[OrderAnomaly]:
        return await self.repository.list_anomalies(order_id=order_id, unresolved_only=unresolved_only, limit=limit)

    async def escalate_overdue(self, now: Optional[datetime] = None) -> int:
        """Escalate unresolved high/critical anomalies older than the escalation delay."""
        now = now or utcnow()
        cutoff = now - timedelta(minutes=self.escalation_after_minutes)
        overdue = await self.repository.list_overdue_anomalies(ATTENTION_SEVERITIES, cutoff)

        escalated = 0
        for anomaly in overdue:
            if await self.repository.update_anomaly(
                anomaly.id,
                {"escalated": True, "escalated_at": now, "escalated_to": self.escalation_target},
                only_if_unset="escalated_at",
            ):
                escalated += 1

        if escalated:
            logger.warning(f"Escalated {escalated} overdue anomalies to {self.escalation_target}")
        return escalated
