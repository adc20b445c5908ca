"""Tests for Stripe webhook signature checks and event handling."""

import json
import time

import pytest

from order_lifecycle.core.event_logger import WebhookEventLogger
from order_lifecycle.core.signature import compute_signature, validate_webhook_request, verify_stripe_signature
from order_lifecycle.services.payment_verifier import PaymentVerifier
from order_lifecycle.services.stripe_webhook import StripeWebhookHandler

from .conftest import WEBHOOK_SECRET


def signed(event, secret=WEBHOOK_SECRET, timestamp=None):
    body = json.dumps(event)
    timestamp = timestamp or int(time.time())
    header = f"t={timestamp},v1={compute_signature(secret, timestamp, body)}"
    return body.encode("utf-8"), header


def checkout_event(event_type, session):
    return {"id": "evt_1", "type": event_type, "data": {"object": session}}


@pytest.fixture
def event_logger(tmp_path):
    return WebhookEventLogger(str(tmp_path / "events"))


@pytest.fixture
def handler(repository, notifier, anomaly_manager, event_logger):
    verifier = PaymentVerifier(repository, notifier)
    return StripeWebhookHandler(
        repository, verifier, anomaly_manager, webhook_secret=WEBHOOK_SECRET, event_logger=event_logger
    )


class TestSignature:
    def test_valid_signature(self):
        body = '{"id": "evt_1"}'
        header = f"t=1700000000,v1={compute_signature(WEBHOOK_SECRET, 1700000000, body)}"

        assert verify_stripe_signature(body, header, WEBHOOK_SECRET, now=1700000100) is True

    def test_any_v1_entry_may_match(self):
        body = '{"id": "evt_1"}'
        good = compute_signature(WEBHOOK_SECRET, 1700000000, body)
        header = f"t=1700000000,v1={'0' * 64},v1={good}"

        assert verify_stripe_signature(body, header, WEBHOOK_SECRET, now=1700000000) is True

    def test_stale_timestamp(self):
        body = '{"id": "evt_1"}'
        header = f"t=1700000000,v1={compute_signature(WEBHOOK_SECRET, 1700000000, body)}"

        assert verify_stripe_signature(body, header, WEBHOOK_SECRET, now=1700000301) is False

    def test_tampered_body(self):
        header = f"t=1700000000,v1={compute_signature(WEBHOOK_SECRET, 1700000000, '{}')}"

        assert verify_stripe_signature('{"amount": 1}', header, WEBHOOK_SECRET, now=1700000000) is False

    def test_malformed_header(self):
        assert verify_stripe_signature("{}", None, WEBHOOK_SECRET) is False
        assert verify_stripe_signature("{}", "t=abc,v1=00", WEBHOOK_SECRET) is False
        assert verify_stripe_signature("{}", "t=1700000000", WEBHOOK_SECRET) is False

    def test_request_validation(self):
        assert validate_webhook_request(b"", "t=1,v1=00", WEBHOOK_SECRET) == (False, "Empty request body")
        assert validate_webhook_request(b"\xff\xfe", "t=1,v1=00", WEBHOOK_SECRET)[0] is False
        # no secret configured: accepted unverified
        assert validate_webhook_request(b"{}", None, None) == (True, None)


async def test_completed_session_settles_order(handler, repository, notifier, make_order, event_logger):
    order = await make_order()
    body, header = signed(
        checkout_event(
            "checkout.session.completed",
            {
                "id": "cs_1",
                "object": "checkout.session",
                "payment_status": "paid",
                "amount_total": 4999,
                "currency": "eur",
                "payment_intent": "pi_1",
                "metadata": {"order_id": order.id},
            },
        )
    )

    result = await handler.handle(body, header)

    assert result.http_status == 200
    assert result.body["success"] is True
    stored = await repository.get_order(order.id)
    assert stored.status == "paid"
    assert stored.payment_reference == "pi_1"
    history = await repository.get_history(order.id)
    assert history[0].changed_by == "webhook"
    assert history[0].reason_code == "STRIPE_WEBHOOK"
    assert notifier.functions() == ["send-order-confirmation"]
    assert event_logger.read_events()[0]["source"] == "stripe"

    replay = await handler.handle(body, header)
    assert replay.http_status == 200
    assert replay.body["message"] == "Payment already processed"
    assert len(await repository.get_history(order.id)) == 1


async def test_order_found_by_session_id(handler, repository, make_order):
    order = await make_order(stripe_session_id="cs_lookup")
    body, header = signed(
        checkout_event(
            "checkout.session.completed",
            {
                "id": "cs_lookup",
                "object": "checkout.session",
                "payment_status": "paid",
                "amount_total": 4999,
                "currency": "eur",
            },
        )
    )

    result = await handler.handle(body, header)

    assert result.http_status == 200
    assert (await repository.get_order(order.id)).status == "paid"


async def test_amount_mismatch_records_anomaly(handler, repository, anomaly_manager, make_order):
    order = await make_order()
    body, header = signed(
        checkout_event(
            "checkout.session.completed",
            {
                "id": "cs_2",
                "object": "checkout.session",
                "payment_status": "paid",
                "amount_total": 100,
                "currency": "eur",
                "client_reference_id": order.id,
            },
        )
    )

    result = await handler.handle(body, header)

    assert result.http_status == 200
    assert result.body["error"] == "AMOUNT_MISMATCH"
    stored = await repository.get_order(order.id)
    assert stored.status == "pending"
    assert stored.requires_attention is True
    anomalies = await anomaly_manager.list_anomalies(order_id=order.id)
    assert anomalies[0].title == "Stripe: Amount mismatch"
    assert anomalies[0].severity == "high"


async def test_session_for_another_order_records_anomaly(handler, repository, anomaly_manager, notifier, make_order):
    order = await make_order(stripe_session_id="cs_linked")
    body, header = signed(
        checkout_event(
            "checkout.session.completed",
            {
                "id": "cs_linked",
                "object": "checkout.session",
                "payment_status": "paid",
                "amount_total": 4999,
                "currency": "eur",
                "payment_intent": "pi_7",
                "metadata": {"order_id": "order-from-elsewhere"},
            },
        )
    )

    result = await handler.handle(body, header)

    assert result.http_status == 200
    assert result.body["error"] == "PAYMENT_ORDER_MISMATCH"
    assert (await repository.get_order(order.id)).status == "pending"
    anomalies = await anomaly_manager.list_anomalies(order_id=order.id)
    assert anomalies[0].title == "Stripe: Payment for another order"
    assert anomalies[0].source_event_key == "stripe:cs_linked:payment_order_mismatch"
    assert notifier.sent == []


async def test_expired_session_cancels_pending_order(handler, repository, make_order):
    order = await make_order()
    body, header = signed(
        checkout_event(
            "checkout.session.expired",
            {"id": "cs_3", "object": "checkout.session", "metadata": {"order_id": order.id}},
        )
    )

    result = await handler.handle(body, header)

    assert result.body["updated"] is True
    stored = await repository.get_order(order.id)
    assert stored.status == "cancelled"
    assert stored.order_status == "cancelled"
    assert (await repository.get_history(order.id))[0].reason_code == "SESSION_EXPIRED"


async def test_expired_session_leaves_paid_order(handler, repository, make_order):
    order = await make_order(status="paid", order_status="paid")
    body, header = signed(
        checkout_event(
            "checkout.session.expired",
            {"id": "cs_4", "object": "checkout.session", "metadata": {"order_id": order.id}},
        )
    )

    result = await handler.handle(body, header)

    assert result.body["updated"] is False
    assert (await repository.get_order(order.id)).status == "paid"


async def test_payment_failed_records_anomaly(handler, repository, anomaly_manager, make_order):
    order = await make_order()
    body, header = signed(
        checkout_event(
            "payment_intent.payment_failed",
            {
                "id": "pi_9",
                "object": "payment_intent",
                "metadata": {"order_id": order.id},
                "last_payment_error": {"code": "card_declined", "message": "Your card was declined."},
            },
        )
    )

    result = await handler.handle(body, header)

    assert result.http_status == 200
    stored = await repository.get_order(order.id)
    assert stored.status == "payment_failed"
    assert stored.order_status == "payment_failed"
    assert stored.requires_attention is False
    anomalies = await anomaly_manager.list_anomalies(order_id=order.id)
    assert anomalies[0].source_event_key == "stripe:pi_9:payment_failed"
    assert anomalies[0].severity == "medium"


async def test_unhandled_event_type(handler):
    body, header = signed({"id": "evt_2", "type": "customer.created", "data": {"object": {}}})

    result = await handler.handle(body, header)

    assert result.http_status == 200
    assert result.body == {"received": True, "ignored": "customer.created"}


async def test_bad_signature_rejected(handler):
    body, _ = signed({"id": "evt_3", "type": "customer.created", "data": {"object": {}}})
    _, header = signed({"id": "evt_3", "type": "customer.created"}, secret="whsec_wrong")

    result = await handler.handle(body, header)

    assert result.http_status == 400
    assert result.body["error"] == "Invalid webhook signature"


async def test_non_object_body_rejected(handler):
    body, header = signed(["not", "an", "event"])

    result = await handler.handle(body, header)

    assert result.http_status == 400
