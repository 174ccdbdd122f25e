import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
import stripe

from humanoid_orders.main import app as fastapi_app
from humanoid_orders.models import Order, OrderTransition, PaymentIntent, Refund
from humanoid_orders.providers import ProviderRegistry
from humanoid_orders.services import Services, get_services
from humanoid_orders.stripe_service import StripeProvider
import humanoid_orders.auth

from conftest import ITEMS, TestingSessionLocal


@pytest.fixture
def services(fulfillment, notifier):
    return Services(
        session_factory=TestingSessionLocal,
        providers=ProviderRegistry([StripeProvider(webhook_secret="whsec_test")]),
        fulfillment=fulfillment,
        notifier=notifier,
    )


@pytest.fixture
def client(services):
    # Bypass auth verification for tests
    fastapi_app.dependency_overrides[humanoid_orders.auth.verify_token] = lambda: {"sub": "ops", "role": "admin"}
    fastapi_app.dependency_overrides[get_services] = lambda: services

    with TestClient(fastapi_app) as c:
        yield c

    # Cleanup dependencies
    fastapi_app.dependency_overrides.clear()


def new_order(client):
    return client.post("/orders", json={"customer_ref": "cust-1", "currency": "EUR", "items": ITEMS}).json()["id"]


def test_full_payment_lifecycle_integration(client, mocker, notifier, fulfillment):
    """
    Test the full lifecycle:
    1. Create order and start checkout (API -> DB + Stripe mocked)
    2. Confirm, then the success webhook (Stripe -> API -> DB)
    3. Admin refund and its echo webhook (API -> DB + Stripe mocked)
    """

    # --- 1. ORDER + CHECKOUT ---
    order_id = new_order(client)
    mock_pi = mocker.Mock(
        id="pi_integration_test_123",
        status="requires_payment_method",
        amount=14197,
        currency="eur",
        client_secret="secret_test_456",
    )
    create = mocker.patch("stripe.PaymentIntent.create", return_value=mock_pi)

    response = client.post(f"/orders/{order_id}/checkout")

    assert response.status_code == 200
    assert response.json()["client_continuation_token"] == "secret_test_456"
    assert create.call_args.kwargs["idempotency_key"] == f"checkout-{order_id}-1"

    db = TestingSessionLocal()
    payment = db.scalars(select(PaymentIntent).filter_by(order_id=order_id)).one()
    assert payment.id == "pi_integration_test_123"
    assert payment.status == "created"
    db.close()

    # --- 2. CONFIRM + WEBHOOK SUCCESS ---
    mock_pi.status = "succeeded"
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=mock_pi)
    confirm = client.post("/payments/confirm", json={"intent_id": "pi_integration_test_123"})
    assert confirm.json()["status"] == "succeeded"
    assert client.get(f"/orders/{order_id}").json()["status"] == "AWAITING_PAYMENT"

    mock_event = {
        "id": "evt_test",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_integration_test_123", "metadata": {"order_id": order_id}}},
    }
    mocker.patch("stripe.Webhook.construct_event", return_value=mock_event)

    webhook_response = client.post(
        "/webhooks/stripe",
        content="raw_stripe_payload",
        headers={"stripe-signature": "test_signature"},
    )

    assert webhook_response.status_code == 200
    assert webhook_response.json() == {"ok": True, "outcome": "applied"}
    assert client.get(f"/orders/{order_id}").json()["status"] == "PAID"
    assert fulfillment.calls == [order_id]

    # --- 3. REFUND ---
    mocker.patch(
        "stripe.Refund.create",
        return_value=mocker.Mock(id="re_123", amount=14197, currency="eur", status="succeeded"),
    )

    refund_response = client.post(f"/orders/{order_id}/refund", json={"reason": "requested_by_customer"})

    assert refund_response.status_code == 200
    assert refund_response.json()["new_order_status"] == "REFUNDED"

    mocker.patch(
        "stripe.Webhook.construct_event",
        return_value={
            "id": "evt_refund",
            "type": "refund.updated",
            "data": {"object": {
                "id": "re_123",
                "payment_intent": "pi_integration_test_123",
                "amount": 14197,
                "status": "succeeded",
            }},
        },
    )
    echo = client.post("/webhooks/stripe", content="raw", headers={"stripe-signature": "sig"})
    assert echo.json()["outcome"] == "replayed"

    db = TestingSessionLocal()
    order = db.get(Order, order_id)
    assert order.status == "REFUNDED"
    assert db.get(PaymentIntent, "pi_integration_test_123").status == "refunded"
    assert len(db.scalars(select(Refund)).all()) == 1
    edges = [(t.from_status, t.to_status) for t in db.scalars(
        select(OrderTransition).filter_by(order_id=order_id).order_by(OrderTransition.id)
    )]
    assert edges == [("PENDING", "AWAITING_PAYMENT"), ("AWAITING_PAYMENT", "PAID"), ("PAID", "REFUNDED")]
    db.close()
    assert notifier.calls == [(order_id, "order_confirmation"), (order_id, "refund_issued")]


def test_webhook_non_existent_payment(client, mocker):
    """Unknown payments are acknowledged and parked for manual review."""
    mock_event = {
        "id": "evt_unknown",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_unknown"}},
    }
    mocker.patch("stripe.Webhook.construct_event", return_value=mock_event)

    response = client.post("/webhooks/stripe", headers={"stripe-signature": "test"})

    assert response.status_code == 200
    assert response.json()["outcome"] == "order_not_found"


def test_same_order_checkout_twice(client, mocker):
    """A second checkout for the same order returns the open intent."""
    order_id = new_order(client)
    mock_pi = mocker.Mock(
        id="pi_first", status="requires_payment_method", amount=14197, currency="eur", client_secret="secret_first"
    )
    mocker.patch("stripe.PaymentIntent.create", return_value=mock_pi)
    client.post(f"/orders/{order_id}/checkout")

    mocker.patch("stripe.PaymentIntent.create", side_effect=Exception("Should not be called"))

    response = client.post(f"/orders/{order_id}/checkout")

    assert response.status_code == 200
    assert response.json()["intent_id"] == "pi_first"
    assert response.json()["reused"] is True


def test_checkout_database_integrity_on_stripe_error(client, mocker):
    """If Stripe is unreachable, nothing is stored and the order stays open."""
    order_id = new_order(client)
    mocker.patch("stripe.PaymentIntent.create", side_effect=stripe.APIConnectionError("Stripe Service Unavailable"))

    response = client.post(f"/orders/{order_id}/checkout")

    assert response.status_code == 503
    assert response.json()["code"] == "provider_unavailable"

    db = TestingSessionLocal()
    assert db.scalars(select(PaymentIntent).filter_by(order_id=order_id)).first() is None
    assert db.get(Order, order_id).status == "PENDING"
    db.close()
