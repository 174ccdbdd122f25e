import re

import pytest
from sqlalchemy import select
from structlog.testing import capture_logs

from humanoid_orders.domain import IntentStatus, OrderStatus, Provider, RefundReason, RefundStatus
from humanoid_orders.errors import (
    AmountExceedsCaptured,
    InvalidRequest,
    InvalidTransition,
    OrderNotFound,
    OrderNotPayable,
    OrderNotRefundable,
    ProviderUnavailable,
)
from humanoid_orders.intents import PaymentIntentStore
from humanoid_orders.models import OrderTransition, PaymentIntent
from humanoid_orders.orders import generate_order_number

from conftest import ITEMS, TestingSessionLocal, webhook


def intent_status(intent_id):
    db = TestingSessionLocal()
    try:
        return PaymentIntentStore(db).get(intent_id).status
    finally:
        db.close()


# Orders


def test_create_order_snapshots_prices(services):
    order = services.orders.create_order("cust-1", "eur", ITEMS)

    assert order.status == OrderStatus.PENDING
    assert order.currency == "EUR"
    assert order.total_amount == 14197
    assert [i.subtotal for i in order.items] == [6495, 7702]
    assert services.orders.get_order_by_number(order.order_number).id == order.id


def test_order_number_format():
    number = generate_order_number(now=1_700_000_000)

    assert re.match(r"^ORD-[0-9A-Z]{9}-[0-9A-Z]{4}$", number)
    assert generate_order_number(now=1_700_000_000)[:13] < generate_order_number(now=1_800_000_000)[:13]


@pytest.mark.parametrize(
    "currency,items",
    [
        ("EUR", []),
        ("JPY", ITEMS),
        ("EUR", [{"component_ref": "servo", "quantity": 0, "unit_price": 100}]),
        ("EUR", [{"component_ref": "servo", "quantity": 1, "unit_price": -1}]),
        ("EUR", [{"component_ref": "sticker", "quantity": 1, "unit_price": 0}]),
    ],
)
def test_create_order_validation(services, currency, items):
    with pytest.raises(InvalidRequest):
        services.orders.create_order("cust-1", currency, items)


def test_unknown_order(services):
    with pytest.raises(OrderNotFound):
        services.orders.get_order("ord_missing")


# Checkout


def test_start_checkout_moves_order_to_awaiting_payment(services, stripe_fake):
    order = services.orders.create_order("cust-1", "EUR", ITEMS)

    checkout = services.orders.start_checkout(order.id, Provider.STRIPE)

    assert checkout.provider == Provider.STRIPE
    assert checkout.client_continuation_token == f"{checkout.intent_id}_secret"
    assert not checkout.reused
    assert services.orders.get_order(order.id).status == OrderStatus.AWAITING_PAYMENT
    assert f"checkout-{order.id}-1" in stripe_fake.by_key


def test_repeated_checkout_reuses_active_intent(services, stripe_fake):
    order = services.orders.create_order("cust-1", "EUR", ITEMS)

    first = services.orders.start_checkout(order.id)
    second = services.orders.start_checkout(order.id)

    assert second.reused
    assert second.intent_id == first.intent_id
    assert stripe_fake.created == 1


def test_concurrent_checkout_opens_one_intent(services, stripe_fake, mocker):
    order = services.orders.create_order("cust-1", "EUR", ITEMS)
    active_for_order = PaymentIntentStore.active_for_order
    calls = []
    racing = []

    def active_then_lose_race(store, order_id):
        found = active_for_order(store, order_id)
        calls.append(order_id)
        # Second lookup is the one inside the write; the other click lands here.
        if len(calls) == 2 and not racing:
            racing.append(services.orders.start_checkout(order.id))
        return found

    mocker.patch.object(PaymentIntentStore, "active_for_order", active_then_lose_race)
    with capture_logs() as logs:
        checkout = services.orders.start_checkout(order.id)

    assert checkout.intent_id == racing[0].intent_id
    assert stripe_fake.created == 1
    assert any(e["event"] == "transaction_retry" and e["error"] == "IntegrityError" for e in logs)
    db = TestingSessionLocal()
    assert len(db.scalars(select(PaymentIntent).filter_by(order_id=order.id)).all()) == 1
    assert len(db.scalars(select(OrderTransition).filter_by(order_id=order.id)).all()) == 1
    db.close()
    assert services.orders.get_order(order.id).status == OrderStatus.AWAITING_PAYMENT


def test_checkout_on_cancelled_order_is_refused(services, stripe_fake):
    order = services.orders.create_order("cust-1", "EUR", ITEMS)
    services.orders.cancel_order(order.id)

    with pytest.raises(OrderNotPayable):
        services.orders.start_checkout(order.id)

    assert stripe_fake.created == 0


def test_checkout_retry_after_failed_payment(services, stripe_fake, notifier):
    order = services.orders.create_order("cust-1", "EUR", ITEMS)
    first = services.orders.start_checkout(order.id)
    payload, headers = webhook("evt_fail", "payment_failed", intent_id=first.intent_id)
    services.reconciler.handle(Provider.STRIPE, payload, headers)
    assert services.orders.get_order(order.id).status == OrderStatus.PAYMENT_FAILED
    assert notifier.calls == [(order.id, "payment_failed")]

    second = services.orders.start_checkout(order.id)

    assert second.intent_id != first.intent_id
    assert f"checkout-{order.id}-2" in stripe_fake.by_key
    assert services.orders.get_order(order.id).status == OrderStatus.AWAITING_PAYMENT


def test_checkout_with_disabled_provider(services):
    services.providers._providers.pop(Provider.PAYPAL)
    order = services.orders.create_order("cust-1", "EUR", ITEMS)

    with pytest.raises(InvalidRequest):
        services.orders.start_checkout(order.id, Provider.PAYPAL)


def test_confirm_updates_intent_but_not_order(services):
    order = services.orders.create_order("cust-1", "EUR", ITEMS)
    checkout = services.orders.start_checkout(order.id)

    result = services.orders.confirm_payment(checkout.intent_id)

    assert result.status == IntentStatus.SUCCEEDED
    assert services.orders.get_order(order.id).status == OrderStatus.AWAITING_PAYMENT


def test_confirm_timeout_requeries_provider(services, stripe_fake):
    order = services.orders.create_order("cust-1", "EUR", ITEMS)
    checkout = services.orders.start_checkout(order.id)
    stripe_fake.succeed(checkout.intent_id)
    stripe_fake.confirm_error = ProviderUnavailable("read timeout")

    result = services.orders.confirm_payment(checkout.intent_id)

    assert result.status == IntentStatus.SUCCEEDED
    assert intent_status(checkout.intent_id) == IntentStatus.SUCCEEDED.value


def test_cancel_releases_active_intent(services, stripe_fake):
    order = services.orders.create_order("cust-1", "EUR", ITEMS)
    checkout = services.orders.start_checkout(order.id)

    view = services.orders.cancel_order(order.id)

    assert view.status == OrderStatus.CANCELLED
    assert view.cancelled_at is not None
    assert intent_status(checkout.intent_id) == IntentStatus.FAILED.value
    assert stripe_fake.cancelled == [checkout.intent_id]


def test_paid_order_cannot_be_cancelled(services, paid_order):
    order_id, _ = paid_order()

    with pytest.raises(InvalidTransition):
        services.orders.cancel_order(order_id)

    assert services.orders.get_order(order_id).status == OrderStatus.PAID


# Refunds


def test_refund_more_than_captured_is_refused(services, paid_order, stripe_fake):
    order_id, _ = paid_order()

    with pytest.raises(AmountExceedsCaptured):
        services.orders.request_refund(order_id, 14198)

    assert stripe_fake.refunds == []
    assert services.orders.get_order(order_id).status == OrderStatus.PAID


def test_full_refund(services, paid_order, notifier):
    order_id, intent_id = paid_order()
    refunded = []
    services.machine.on_order_refunded(refunded.append)

    outcome = services.orders.request_refund(order_id, reason=RefundReason.DUPLICATE)

    assert outcome.amount == 14197
    assert outcome.refund_status == RefundStatus.SUCCEEDED
    assert outcome.new_order_status == OrderStatus.REFUNDED
    assert intent_status(intent_id) == IntentStatus.REFUNDED.value
    assert (order_id, "refund_issued") in notifier.calls
    assert refunded == [order_id]


def test_partial_refunds_then_remainder(services, paid_order):
    order_id, _ = paid_order()

    first = services.orders.request_refund(order_id, 4197)
    second = services.orders.request_refund(order_id)

    assert first.new_order_status == OrderStatus.PARTIALLY_REFUNDED
    assert second.amount == 10000
    assert second.new_order_status == OrderStatus.REFUNDED

    with pytest.raises(OrderNotRefundable):
        services.orders.request_refund(order_id, 1)


def test_pending_refund_leaves_order_paid(services, paid_order, stripe_fake):
    order_id, _ = paid_order()
    stripe_fake.refund_status = RefundStatus.PENDING

    outcome = services.orders.request_refund(order_id, 1000)

    assert outcome.refund_status == RefundStatus.PENDING
    assert outcome.new_order_status == OrderStatus.PAID


def test_unpaid_order_is_not_refundable(services):
    order = services.orders.create_order("cust-1", "EUR", ITEMS)
    services.orders.start_checkout(order.id)

    with pytest.raises(OrderNotRefundable):
        services.orders.request_refund(order.id)


# Fulfillment


def test_fulfillment_flow(services, paid_order, notifier):
    order_id, _ = paid_order()
    fulfilled = []
    services.machine.on_order_fulfilled(fulfilled.append)

    assert services.orders.begin_fulfillment(order_id).status == OrderStatus.PROCESSING
    done = services.orders.complete_fulfillment(order_id)

    assert done.status == OrderStatus.FULFILLED
    assert done.fulfilled_at is not None
    assert (order_id, "order_fulfilled") in notifier.calls
    assert fulfilled == [order_id]


def test_refund_during_processing(services, paid_order):
    order_id, _ = paid_order()
    services.orders.begin_fulfillment(order_id)

    outcome = services.orders.request_refund(order_id, 100)

    assert outcome.new_order_status == OrderStatus.PARTIALLY_REFUNDED


# Provider info


def test_payment_methods_depend_on_currency(services):
    eur = {m["id"] for m in services.orders.available_payment_methods("EUR")}
    usd = {m["id"] for m in services.orders.available_payment_methods("usd")}

    assert eur == {"stripe_card", "stripe_sepa", "paypal"}
    assert usd == {"stripe_card", "paypal"}


def test_provider_status(services):
    status = services.orders.provider_status()

    assert status["stripe"]["enabled"]
    assert status["paypal"]["enabled"]
    assert status["stripe"]["webhook_configured"]
