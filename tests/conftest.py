"""Shared fixtures: a throwaway SQLite order store, provider doubles and a recording notifier."""

import os
import tempfile

os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="order-lifecycle-logs-"))

import httpx  # noqa: E402
import pytest  # noqa: E402

from order_lifecycle.config.settings import Settings  # noqa: E402
from order_lifecycle.db.base import get_engine, get_session_factory, init_db  # noqa: E402
from order_lifecycle.db.repository import OrderRepository  # noqa: E402
from order_lifecycle.db.seed import seed_transitions  # noqa: E402
from order_lifecycle.integrations.notifier import NotificationDispatcher  # noqa: E402
from order_lifecycle.models.order import Principal  # noqa: E402
from order_lifecycle.models.status import AdminPermission, StatusActor  # noqa: E402
from order_lifecycle.services.anomaly_manager import AnomalyManager  # noqa: E402

INTERNAL_KEY = "internal-test-key"
WEBHOOK_SECRET = "whsec_test_secret"


class RecordingNotifier(NotificationDispatcher):
    """Notifier double that remembers what would have been sent."""

    def __init__(self):
        super().__init__(None)
        self.enabled = True
        self.sent = []

    def notify(self, function_name, order_id, extra=None):
        self.sent.append((function_name, order_id, extra))
        return None

    def functions(self):
        return [name for name, _, _ in self.sent]


class FakePayPal:
    """In-memory PayPal Orders API served through httpx.MockTransport."""

    def __init__(self, value="49.99", currency="EUR", status="APPROVED"):
        self.value = value
        self.currency = currency
        self.status = status
        self.captured = False
        self.capture_calls = 0
        self.fail_with = None  # "timeout" or an HTTP status code
        self.reference_id = None

    def _order(self, order_id, status):
        unit = {"amount": {"value": self.value, "currency_code": self.currency}}
        if self.reference_id:
            unit["reference_id"] = self.reference_id
        body = {
            "id": order_id,
            "status": status,
            "purchase_units": [unit],
            "payer": {
                "payer_id": "PAYER123",
                "email_address": "buyer@example.com",
                "name": {"given_name": "Ada", "surname": "Lovelace"},
            },
        }
        if status == "COMPLETED":
            body["purchase_units"][0]["payments"] = {"captures": [{"id": "CAPTURE-1", "status": "COMPLETED"}]}
        return body

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "paypal-token", "expires_in": 3600})

        if self.fail_with == "timeout":
            raise httpx.ReadTimeout("PayPal timed out", request=request)
        if self.fail_with:
            return httpx.Response(self.fail_with, json={"name": "ERROR", "message": "provider failure"})

        order_id = path.split("/")[4]
        if path.endswith("/capture"):
            self.capture_calls += 1
            if self.captured:
                return httpx.Response(
                    422,
                    json={
                        "name": "UNPROCESSABLE_ENTITY",
                        "details": [{"issue": "ORDER_ALREADY_CAPTURED"}],
                    },
                )
            self.captured = True
            return httpx.Response(201, json=self._order(order_id, "COMPLETED"))

        status = "COMPLETED" if self.captured else self.status
        return httpx.Response(200, json=self._order(order_id, status))

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class FakeStripe:
    """Stripe Checkout Sessions endpoint served through httpx.MockTransport."""

    def __init__(self, amount_total=4999, currency="eur", payment_status="paid", order_id=None):
        self.amount_total = amount_total
        self.currency = currency
        self.payment_status = payment_status
        self.order_id = order_id

    def session(self, session_id, order_id=None):
        return {
            "id": session_id,
            "object": "checkout.session",
            "amount_total": self.amount_total,
            "currency": self.currency,
            "payment_status": self.payment_status,
            "payment_intent": "pi_123",
            "metadata": {"order_id": order_id} if order_id else {},
            "customer_details": {"email": "buyer@example.com"},
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        session_id = request.url.path.rsplit("/", 1)[-1]
        return httpx.Response(200, json=self.session(session_id, self.order_id))

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


AUTH_USERS = {
    "customer-token": {"id": "user-1", "app_metadata": {}},
    "other-customer-token": {"id": "user-2", "app_metadata": {}},
    "ops-token": {"id": "admin-ops", "app_metadata": {"role": "admin", "admin_permission": "operations"}},
    "admin-token": {"id": "admin-full", "app_metadata": {"role": "admin", "admin_permission": "full_access"}},
}


def auth_handler(request: httpx.Request) -> httpx.Response:
    token = request.headers.get("authorization", "").removeprefix("Bearer ")
    user = AUTH_USERS.get(token)
    if user is None:
        return httpx.Response(401, json={"message": "invalid JWT"})
    return httpx.Response(200, json=user)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path}/orders.db",
        internal_service_key=INTERNAL_KEY,
        auth_url="https://auth.test",
        auth_api_key="anon-key",
        paypal_client_id="client-id",
        paypal_client_secret="client-secret",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        event_log_dir=str(tmp_path / "events"),
    )


@pytest.fixture
async def db_engine(settings):
    engine = get_engine(settings.database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def repository(db_engine):
    repo = OrderRepository(get_session_factory(db_engine))
    await seed_transitions(repo)
    return repo


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def anomaly_manager(repository):
    return AnomalyManager(repository, retry_base_minutes=15, escalation_after_minutes=120)


@pytest.fixture
def fake_paypal():
    return FakePayPal()


@pytest.fixture
def fake_stripe():
    return FakeStripe()


@pytest.fixture
def make_order(repository):
    async def _make_order(**overrides):
        fields = {
            "user_id": "user-1",
            "amount": 4999,
            "currency": "EUR",
            "status": "pending",
            "order_status": "payment_pending",
        }
        fields.update(overrides)
        items = fields.pop(
            "items",
            [
                {
                    "product_id": "prod-1",
                    "quantity": 1,
                    "unit_price": 4999,
                    "product_snapshot": {"name": "Linen shirt", "price": 4999, "sku": "LS-01"},
                }
            ],
        )
        return await repository.create_order(items=items, **fields)

    return _make_order


@pytest.fixture
def internal_principal():
    return Principal(actor=StatusActor.SYSTEM, internal=True)


@pytest.fixture
def customer_principal():
    return Principal(actor=StatusActor.CUSTOMER, user_id="user-1")


@pytest.fixture
def admin_principal():
    return Principal(actor=StatusActor.ADMIN, user_id="admin-full", permission=AdminPermission.FULL_ACCESS)
