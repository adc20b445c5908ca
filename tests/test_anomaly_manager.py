"""Tests for anomaly recording, resolution and escalation."""

from datetime import datetime, timedelta

import pytest

from order_lifecycle.core.errors import NotFoundError, ValidationError
from order_lifecycle.models.status import AnomalySeverity, AnomalyType
from order_lifecycle.services.anomaly_manager import score_severity


def test_default_severity_by_type():
    assert score_severity(AnomalyType.PAYMENT) == AnomalySeverity.MEDIUM
    assert score_severity(AnomalyType.TECHNICAL) == AnomalySeverity.HIGH
    assert score_severity(AnomalyType.CUSTOMER) == AnomalySeverity.LOW
    assert score_severity(AnomalyType.FRAUD) == AnomalySeverity.HIGH


@pytest.mark.parametrize(
    "fraud_score,expected",
    [
        (95, AnomalySeverity.CRITICAL),
        (80, AnomalySeverity.CRITICAL),
        (65, AnomalySeverity.HIGH),
        (30, AnomalySeverity.MEDIUM),
        (10, AnomalySeverity.LOW),
    ],
)
def test_fraud_severity_follows_score(fraud_score, expected):
    assert score_severity(AnomalyType.FRAUD, fraud_score) == expected


async def test_record_flags_order(anomaly_manager, repository, make_order):
    order = await make_order()

    anomaly, created = await anomaly_manager.record(order.id, AnomalyType.STOCK, title="Out of stock")

    assert created is True
    assert anomaly.severity == "medium"
    assert anomaly.is_resolved is False
    stored = await repository.get_order(order.id)
    assert stored.has_anomaly is True
    assert stored.anomaly_count == 1
    assert stored.requires_attention is False


async def test_attention_is_never_lowered_by_recording(anomaly_manager, repository, make_order):
    order = await make_order()

    await anomaly_manager.record(order.id, AnomalyType.TECHNICAL, title="Label printer down")
    await anomaly_manager.record(order.id, AnomalyType.CUSTOMER, title="Address typo", severity=AnomalySeverity.LOW)

    stored = await repository.get_order(order.id)
    assert stored.anomaly_count == 2
    assert stored.requires_attention is True
    assert stored.attention_reason == "Label printer down"


async def test_fraud_score_sets_severity(anomaly_manager, make_order):
    order = await make_order(fraud_score=85)

    anomaly, _ = await anomaly_manager.record(order.id, AnomalyType.FRAUD, title="Suspicious card")

    assert anomaly.severity == "critical"


async def test_same_source_event_is_recorded_once(anomaly_manager, repository, make_order):
    order = await make_order()

    first, created = await anomaly_manager.record(
        order.id, AnomalyType.DELIVERY, title="Lost parcel", source_event_key="dhl:JD1:CA"
    )
    second, created_again = await anomaly_manager.record(
        order.id, AnomalyType.DELIVERY, title="Lost parcel", source_event_key="dhl:JD1:CA"
    )

    assert created is True
    assert created_again is False
    assert second.id == first.id
    assert (await repository.get_order(order.id)).anomaly_count == 1


async def test_record_on_missing_order(anomaly_manager):
    with pytest.raises(NotFoundError):
        await anomaly_manager.record("missing-order", AnomalyType.PAYMENT, title="Orphan payment")


async def test_resolve_is_idempotent(anomaly_manager, make_order):
    order = await make_order()
    anomaly, _ = await anomaly_manager.record(order.id, AnomalyType.PAYMENT, title="Double charge")

    resolved = await anomaly_manager.resolve(anomaly.id, resolved_by="admin-1", notes="Refunded duplicate", action="refund")
    again = await anomaly_manager.resolve(anomaly.id, resolved_by="admin-2", notes="Looked again")

    assert resolved.resolved_at is not None
    assert resolved.resolution_action == "refund"
    assert again.resolved_at == resolved.resolved_at
    assert again.resolved_by == "admin-1"
    assert again.resolution_notes == "Refunded duplicate"


async def test_resolve_requires_notes(anomaly_manager, make_order):
    order = await make_order()
    anomaly, _ = await anomaly_manager.record(order.id, AnomalyType.PAYMENT, title="Double charge")

    with pytest.raises(ValidationError) as exc_info:
        await anomaly_manager.resolve(anomaly.id, resolved_by="admin-1", notes="  ")

    assert exc_info.value.code == "NOTES_REQUIRED"


async def test_resolve_unknown_anomaly(anomaly_manager):
    with pytest.raises(NotFoundError) as exc_info:
        await anomaly_manager.resolve("missing", resolved_by="admin-1", notes="n/a")

    assert exc_info.value.code == "ANOMALY_NOT_FOUND"


async def test_attention_cleared_with_last_serious_anomaly(anomaly_manager, repository, make_order):
    order = await make_order()
    first, _ = await anomaly_manager.record(order.id, AnomalyType.TECHNICAL, title="Sync failed")
    second, _ = await anomaly_manager.record(
        order.id, AnomalyType.PAYMENT, title="Chargeback", severity=AnomalySeverity.CRITICAL
    )
    await anomaly_manager.record(order.id, AnomalyType.CUSTOMER, title="Complaint", severity=AnomalySeverity.LOW)

    await anomaly_manager.resolve(first.id, resolved_by="admin-1", notes="Resynced")
    assert (await repository.get_order(order.id)).requires_attention is True

    await anomaly_manager.resolve(second.id, resolved_by="admin-1", notes="Won dispute")
    stored = await repository.get_order(order.id)
    assert stored.requires_attention is False
    assert stored.attention_reason is None
    assert stored.has_anomaly is True


async def test_retry_backoff_doubles(anomaly_manager, make_order):
    order = await make_order()
    anomaly, _ = await anomaly_manager.record(order.id, AnomalyType.TECHNICAL, title="Invoice upload failed")
    now = datetime(2024, 5, 2, 12, 0)

    assert await anomaly_manager.register_retry(anomaly.id, now=now) is True
    first = await anomaly_manager.repository.get_anomaly(anomaly.id)
    assert first.retry_count == 1
    assert first.next_retry_at == now + timedelta(minutes=15)

    assert await anomaly_manager.register_retry(anomaly.id, now=now) is True
    second = await anomaly_manager.repository.get_anomaly(anomaly.id)
    assert second.next_retry_at == now + timedelta(minutes=30)

    assert await anomaly_manager.register_retry(anomaly.id, now=now) is False
    third = await anomaly_manager.repository.get_anomaly(anomaly.id)
    assert third.retry_count == 3
    assert third.next_retry_at is None

    assert await anomaly_manager.register_retry(anomaly.id, now=now) is False
    assert (await anomaly_manager.repository.get_anomaly(anomaly.id)).retry_count == 3


async def test_escalate_keeps_first_escalation(anomaly_manager, make_order):
    order = await make_order()
    anomaly, _ = await anomaly_manager.record(order.id, AnomalyType.TECHNICAL, title="Sync failed")

    first = await anomaly_manager.escalate(anomaly.id, "team-lead", now=datetime(2024, 5, 2, 12, 0))
    second = await anomaly_manager.escalate(anomaly.id, "cto", now=datetime(2024, 5, 2, 13, 0))

    assert first.escalated is True
    assert second.escalated_to == "team-lead"
    assert second.escalated_at == datetime(2024, 5, 2, 12, 0)


async def test_escalate_overdue(anomaly_manager, repository, make_order):
    order = await make_order()
    old, _ = await anomaly_manager.record(order.id, AnomalyType.TECHNICAL, title="Sync failed")
    fresh, _ = await anomaly_manager.record(order.id, AnomalyType.FRAUD, title="Velocity check")
    minor, _ = await anomaly_manager.record(order.id, AnomalyType.STOCK, title="Low stock")

    now = datetime(2024, 5, 2, 12, 0)
    await repository.update_anomaly(old.id, {"detected_at": now - timedelta(hours=3)})
    await repository.update_anomaly(minor.id, {"detected_at": now - timedelta(hours=3)})
    await repository.update_anomaly(fresh.id, {"detected_at": now - timedelta(minutes=10)})

    assert await anomaly_manager.escalate_overdue(now=now) == 1
    assert await anomaly_manager.escalate_overdue(now=now) == 0

    escalated = await repository.get_anomaly(old.id)
    assert escalated.escalated_to == "operations"
    assert (await repository.get_anomaly(fresh.id)).escalated is False
    assert (await repository.get_anomaly(minor.id)).escalated is False


async def test_list_unresolved(anomaly_manager, make_order):
    order = await make_order()
    done, _ = await anomaly_manager.record(order.id, AnomalyType.STOCK, title="Out of stock")
    await anomaly_manager.record(order.id, AnomalyType.CUSTOMER, title="Complaint")
    await anomaly_manager.resolve(done.id, resolved_by="admin-1", notes="Restocked")

    everything = await anomaly_manager.list_anomalies(order_id=order.id)
    open_only = await anomaly_manager.list_anomalies(order_id=order.id, unresolved_only=True)

    assert len(everything) == 2
    assert [a.title for a in open_only] == ["Complaint"]
