import json
import os

# Settings are read at import time.
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_app.db")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from humanoid_orders.collaborators import FulfillmentTrigger, Notifier
from humanoid_orders.database import Base
from humanoid_orders.domain import (
    IntentResult,
    IntentStatus,
    NormalizedEvent,
    OrderStatus,
    Provider,
    RefundResult,
    RefundStatus,
)
from humanoid_orders.errors import IntentNotFound, InvalidSignature
from humanoid_orders.models import Order
from humanoid_orders.orders import generate_order_number
from humanoid_orders.providers import PaymentProvider, ProviderRegistry
from humanoid_orders.services import Services

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, expire_on_commit=False, bind=engine
)

ITEMS = [
    {"component_ref": "servo-mg996r", "name": "MG996R servo", "quantity": 5, "unit_price": 1299},
    {"component_ref": "frame-torso-v2", "name": "Torso frame", "quantity": 1, "unit_price": 7702},
]  # 14197 EUR cents


class FakeProvider(PaymentProvider):
    """In-memory provider; signs webhooks by echoing the shared secret."""

    def __init__(self, name=Provider.STRIPE, webhook_secret="fake-secret"):
        self.name = Provider(name)
        self.webhook_secret = webhook_secret
        self.intents = {}
        self.by_key = {}
        self.created = 0
        self.cancelled = []
        self.refunds = []
        self.confirm_error = None
        self.refund_status = RefundStatus.SUCCEEDED

    def create_intent(self, order_id, amount, currency, customer, idempotency_key):
        currency = self.validate(amount, currency)
        if idempotency_key in self.by_key:
            return self.by_key[idempotency_key]
        self.created += 1
        intent_id = f"{self.name.value[:2]}_intent_{self.created}"
        result = IntentResult(
            intent_id=intent_id,
            provider=self.name,
            status=IntentStatus.CREATED,
            amount=amount,
            currency=currency,
            client_token=f"{intent_id}_secret",
        )
        self.intents[intent_id] = result
        self.by_key[idempotency_key] = result
        return result

    def fetch_status(self, intent_id):
        if intent_id not in self.intents:
            raise IntentNotFound(intent_id=intent_id)
        return self.intents[intent_id]

    def confirm_or_capture(self, intent_id):
        if self.confirm_error is not None:
            raise self.confirm_error
        self.intents[intent_id] = self.intents[intent_id].model_copy(
            update={"status": IntentStatus.SUCCEEDED, "reference_id": f"cap_{intent_id}"}
        )
        return self.intents[intent_id]

    def succeed(self, intent_id):
        self.intents[intent_id] = self.intents[intent_id].model_copy(update={"status": IntentStatus.SUCCEEDED})

    def refund(self, intent_id, amount, reason, idempotency_key, capture_id=None, currency=None):
        refund_id = f"re_{len(self.refunds) + 1}"
        self.refunds.append((intent_id, amount, idempotency_key))
        return RefundResult(
            refund_id=refund_id,
            intent_id=intent_id,
            amount=amount,
            currency=currency or "EUR",
            status=self.refund_status,
        )

    def cancel(self, intent_id):
        self.cancelled.append(intent_id)

    def parse_webhook(self, raw_payload, headers, shared_secret):
        if headers.get("x-fake-signature") != shared_secret:
            raise InvalidSignature("Invalid signature")
        body = json.loads(raw_payload)
        if body.get("type") == "ignored":
            return None
        return NormalizedEvent(provider=self.name, **body)


class CountingFulfillment(FulfillmentTrigger):
    def __init__(self):
        self.calls = []

    def start(self, order_id):
        self.calls.append(order_id)


class CountingNotifier(Notifier):
    def __init__(self):
        self.calls = []
        self.fail_next = 0

    def send(self, order_id, template_kind):
        if self.fail_next:
            self.fail_next -= 1
            raise RuntimeError("mail relay down")
        self.calls.append((order_id, template_kind))


def webhook(provider_event_id, type, secret="fake-secret", **fields):
    """Payload and headers for a FakeProvider delivery."""
    payload = json.dumps({"provider_event_id": provider_event_id, "type": type, **fields}).encode()
    return payload, {"x-fake-signature": secret}


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def stripe_fake():
    return FakeProvider(Provider.STRIPE)


@pytest.fixture
def paypal_fake():
    return FakeProvider(Provider.PAYPAL)


@pytest.fixture
def fulfillment():
    return CountingFulfillment()


@pytest.fixture
def notifier():
    return CountingNotifier()


@pytest.fixture
def services(stripe_fake, paypal_fake, fulfillment, notifier):
    return Services(
        session_factory=TestingSessionLocal,
        providers=ProviderRegistry([stripe_fake, paypal_fake]),
        fulfillment=fulfillment,
        notifier=notifier,
    )


@pytest.fixture
def make_order():
    def _make(status=OrderStatus.PENDING, total=14197, currency="EUR"):
        db = TestingSessionLocal()
        order = Order(
            order_number=generate_order_number(),
            status=OrderStatus(status).value,
            total_amount=total,
            currency=currency,
            customer_ref="cust-1",
            payment_attempts=0,
        )
        db.add(order)
        db.commit()
        order_id = order.id
        db.close()
        return order_id

    return _make


@pytest.fixture
def paid_order(services):
    """Order paid through checkout plus a provider success webhook."""
    def _pay(provider=Provider.STRIPE):
        order = services.orders.create_order("cust-1", "EUR", ITEMS)
        checkout = services.orders.start_checkout(order.id, provider)
        services.providers.get(provider).succeed(checkout.intent_id)
        payload, headers = webhook(
            f"evt_paid_{order.id}", "payment_succeeded", intent_id=checkout.intent_id
        )
        services.reconciler.handle(provider, payload, headers)
        return order.id, checkout.intent_id

    return _pay
