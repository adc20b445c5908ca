"""HTTP-level tests for the FastAPI application."""

import json
import time

import httpx
import pytest

from order_lifecycle.core.signature import compute_signature
from order_lifecycle.models.status import AnomalySeverity, AnomalyType
from order_lifecycle.server.app import build_services, create_app

from .conftest import INTERNAL_KEY, WEBHOOK_SECRET, auth_handler


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


INTERNAL = bearer(INTERNAL_KEY)
CUSTOMER = bearer("customer-token")
OTHER_CUSTOMER = bearer("other-customer-token")
OPS = bearer("ops-token")
ADMIN = bearer("admin-token")


@pytest.fixture
async def services(settings, db_engine, repository, notifier, fake_paypal, fake_stripe):
    container = build_services(
        settings,
        db_engine=db_engine,
        paypal_transport=fake_paypal.transport,
        stripe_transport=fake_stripe.transport,
        auth_transport=httpx.MockTransport(auth_handler),
        notifier=notifier,
    )
    yield container
    await container.close()


@pytest.fixture
async def client(services):
    app = create_app(services=services)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["paypal"] == "configured"
    assert body["checks"]["stripe_webhook_signature"] == "enabled"


async def test_status_update_requires_credentials(client, make_order):
    order = await make_order()

    response = await client.post(f"/orders/{order.id}/status", json={"new_status": "cancelled"})
    assert response.status_code == 401
    assert response.json() == {
        "success": False,
        "error": "UNAUTHORIZED",
        "message": "Authentication required",
        "retryable": False,
    }

    response = await client.post(
        f"/orders/{order.id}/status", json={"new_status": "cancelled"}, headers=bearer("forged-token")
    )
    assert response.status_code == 401


async def test_customer_cancels_own_order(client, repository, make_order):
    order = await make_order(order_status="created")

    response = await client.post(f"/orders/{order.id}/status", json={"newStatus": "cancelled"}, headers=CUSTOMER)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["old_status"] == "created"
    assert body["new_status"] == "cancelled"

    history = await repository.get_history(order.id)
    assert history[0].changed_by == "customer"
    assert history[0].changed_by_user_id == "user-1"
    assert history[0].user_agent is not None


async def test_customer_cannot_touch_other_orders(client, make_order):
    order = await make_order(order_status="created")

    response = await client.post(
        f"/orders/{order.id}/status", json={"new_status": "cancelled"}, headers=OTHER_CUSTOMER
    )

    assert response.status_code == 403
    assert response.json()["error"] == "FORBIDDEN"


async def test_admin_transition_and_invalid_edge(client, make_order):
    order = await make_order(status="paid", order_status="paid")

    response = await client.post(f"/orders/{order.id}/status", json={"new_status": "validated"}, headers=OPS)
    assert response.status_code == 200

    response = await client.post(f"/orders/{order.id}/status", json={"new_status": "delivered"}, headers=OPS)
    assert response.status_code == 409
    assert response.json()["error"] == "INVALID_TRANSITION"
    assert response.json()["retryable"] is False


async def test_operations_admin_cannot_refund(client, make_order):
    order = await make_order(status="paid", order_status="paid")

    response = await client.post(
        f"/orders/{order.id}/status",
        json={"new_status": "refunded", "reason_code": "DAMAGED"},
        headers=OPS,
    )

    assert response.status_code == 403


async def test_bad_status_and_bad_body(client, make_order):
    order = await make_order()

    response = await client.post(f"/orders/{order.id}/status", json={"new_status": "lost"}, headers=ADMIN)
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_STATUS"

    response = await client.post(f"/orders/{order.id}/status", json={"reason": "x"}, headers=ADMIN)
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_REQUEST"


async def test_unknown_order(client):
    response = await client.post("/orders/nope/status", json={"new_status": "cancelled"}, headers=ADMIN)

    assert response.status_code == 404
    assert response.json()["error"] == "ORDER_NOT_FOUND"


async def test_notifying_transition_sends_status_email(client, notifier, make_order):
    order = await make_order(status="paid", order_status="paid")

    response = await client.post(
        f"/orders/{order.id}/status",
        json={"newStatus": "cancelled", "reasonCode": "OUT_OF_STOCK", "reasonMessage": "Item discontinued"},
        headers=ADMIN,
    )

    assert response.status_code == 200
    assert response.json()["auto_notify"] is True
    assert notifier.sent == [
        ("send-order-notification", order.id, {"oldStatus": "paid", "newStatus": "cancelled"})
    ]


async def test_internal_caller_picks_actor(client, repository, make_order):
    order = await make_order()

    response = await client.post(
        f"/orders/{order.id}/status",
        json={"new_status": "payment_failed", "actor": "scheduler", "metadata": {"job": "sweep"}},
        headers=INTERNAL,
    )

    assert response.status_code == 200
    history = await repository.get_history(order.id)
    assert history[0].changed_by == "scheduler"
    assert history[0].meta == {"job": "sweep"}


async def test_transitions_are_filtered_for_customers(client, make_order):
    order = await make_order(order_status="created")

    customer_view = await client.get(f"/orders/{order.id}/transitions", headers=CUSTOMER)
    admin_view = await client.get(f"/orders/{order.id}/transitions", headers=ADMIN)

    assert customer_view.status_code == 200
    assert customer_view.json()["current_status"] == "created"
    assert [t["to_status"] for t in customer_view.json()["transitions"]] == ["cancelled"]
    assert {t["to_status"] for t in admin_view.json()["transitions"]} == {"payment_pending", "cancelled"}


async def test_history_route(client, make_order):
    order = await make_order(status="paid", order_status="paid")
    await client.post(
        f"/orders/{order.id}/status",
        json={"new_status": "validated", "metadata": {"checked": True}},
        headers=OPS,
    )

    response = await client.get(f"/orders/{order.id}/history", headers=CUSTOMER)

    assert response.status_code == 200
    entries = response.json()["history"]
    assert len(entries) == 1
    assert entries[0]["new_status"] == "validated"
    assert entries[0]["metadata"] == {"checked": True}


async def test_paypal_verify_route(client, repository, make_order):
    order = await make_order()

    response = await client.post(
        "/payments/paypal/verify",
        json={"paypalOrderId": "PAYPAL-1", "orderId": order.id},
        headers=CUSTOMER,
    )

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert (await repository.get_order(order.id)).status == "paid"


async def test_paypal_outage_maps_to_gateway_errors(client, make_order, fake_paypal):
    order = await make_order()

    fake_paypal.fail_with = 503
    response = await client.post(
        "/payments/paypal/verify", json={"paypal_order_id": "PAYPAL-1", "order_id": order.id}, headers=INTERNAL
    )
    assert response.status_code == 502
    assert response.json()["error"] == "PROVIDER_UNAVAILABLE"
    assert response.json()["retryable"] is True

    fake_paypal.fail_with = "timeout"
    response = await client.post(
        "/payments/paypal/verify", json={"paypal_order_id": "PAYPAL-1", "order_id": order.id}, headers=INTERNAL
    )
    assert response.status_code == 504
    assert response.json()["retryable"] is True


async def test_stripe_verify_route(client, make_order):
    order = await make_order(stripe_session_id="cs_route")

    response = await client.post("/payments/stripe/verify", json={"sessionId": "cs_route"}, headers=CUSTOMER)

    assert response.status_code == 200
    assert response.json()["order_id"] == order.id
    assert response.json()["status"] == "paid"


async def test_stripe_webhook_route(client, repository, make_order):
    order = await make_order()
    body = json.dumps(
        {
            "id": "evt_route",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_9",
                    "object": "checkout.session",
                    "payment_status": "paid",
                    "amount_total": 4999,
                    "currency": "eur",
                    "metadata": {"order_id": order.id},
                }
            },
        }
    )
    timestamp = int(time.time())
    signature = f"t={timestamp},v1={compute_signature(WEBHOOK_SECRET, timestamp, body)}"

    rejected = await client.post("/webhooks/stripe", content=body, headers={"Stripe-Signature": "t=1,v1=00"})
    accepted = await client.post("/webhooks/stripe", content=body, headers={"Stripe-Signature": signature})

    assert rejected.status_code == 400
    assert accepted.status_code == 200
    assert (await repository.get_order(order.id)).status == "paid"


async def test_carrier_webhook_routes(client, repository, make_order):
    order = await make_order(status="paid", order_status="shipped", tracking_number="6A777")

    response = await client.post(
        "/webhooks/carrier",
        json={"parcelnumber": "6A777", "event": {"code": "EN_LIVRAISON", "label": "En cours de livraison"}},
        headers={"x-carrier": "colissimo"},
    )
    assert response.status_code == 200
    assert response.json()["new_status"] == "in_transit"

    response = await client.post(
        "/webhooks/carrier/colissimo",
        json={"parcelnumber": "6A777", "event": {"code": "LIVRE", "label": "Livré"}},
    )
    assert response.status_code == 200
    assert (await repository.get_order(order.id)).order_status == "delivered"


async def test_carrier_webhook_rejects_garbage(client):
    response = await client.post("/webhooks/carrier/dhl", content=b"not json")

    assert response.status_code == 400
    assert response.json()["success"] is False


async def test_anomaly_routes(client, anomaly_manager, make_order):
    order = await make_order()
    anomaly, _ = await anomaly_manager.record(
        order.id, AnomalyType.PAYMENT, title="Chargeback", severity=AnomalySeverity.HIGH
    )

    forbidden = await client.get("/anomalies", headers=CUSTOMER)
    assert forbidden.status_code == 403

    listing = await client.get("/anomalies", params={"order_id": order.id, "unresolved_only": True}, headers=OPS)
    assert listing.status_code == 200
    assert listing.json()["count"] == 1
    assert listing.json()["anomalies"][0]["title"] == "Chargeback"

    escalated = await client.post(
        f"/anomalies/{anomaly.id}/escalate", json={"escalatedTo": "finance"}, headers=OPS
    )
    assert escalated.status_code == 200
    assert escalated.json()["escalated_to"] == "finance"

    missing_notes = await client.post(f"/anomalies/{anomaly.id}/resolve", json={"notes": ""}, headers=OPS)
    assert missing_notes.status_code == 400

    resolved = await client.post(
        f"/anomalies/{anomaly.id}/resolve", json={"notes": "Dispute won", "action": "none"}, headers=OPS
    )
    assert resolved.status_code == 200
    assert resolved.json()["resolved_by"] == "admin-ops"
    assert resolved.json()["resolved_at"] is not None

    unknown = await client.post("/anomalies/missing/resolve", json={"notes": "x"}, headers=OPS)
    assert unknown.status_code == 404
