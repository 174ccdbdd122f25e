import secrets
import string
import time
from typing import Iterable, Optional

from sqlalchemy import select
import structlog

from humanoid_orders.config import settings
from humanoid_orders.database import run_in_transaction
from humanoid_orders.domain import (
    ACTIVE_INTENT_STATUSES,
    CheckoutResult,
    IntentResult,
    IntentStatus,
    LineItemIn,
    OrderEvent,
    OrderStatus,
    OrderView,
    Provider,
    RefundOutcome,
    RefundReason,
    RefundStatus,
)
from humanoid_orders.errors import (
    ActiveIntentExists,
    AmountExceedsCaptured,
    IllegalIntentStatus,
    InvalidRequest,
    OrderNotFound,
    OrderNotPayable,
    OrderNotRefundable,
    PaymentEngineError,
    ProviderUnavailable,
)
from humanoid_orders.intents import PaymentIntentStore
from humanoid_orders.models import Order, OrderItem

logger = structlog.get_logger(component="orders")

_ALPHABET = string.digits + string.ascii_uppercase

PAYABLE = (OrderStatus.PENDING, OrderStatus.AWAITING_PAYMENT, OrderStatus.PAYMENT_FAILED)
REFUNDABLE = (OrderStatus.PAID, OrderStatus.PROCESSING, OrderStatus.PARTIALLY_REFUNDED)


def _base36(number: int) -> str:
    digits = ""
    while number:
        number, rem = divmod(number, 36)
        digits = _ALPHABET[rem] + digits
    return digits or "0"


def generate_order_number(now: float = None) -> str:
    """``ORD-<ms timestamp, base36>-<random>``; sorts by creation time."""
    millis = int((now if now is not None else time.time()) * 1000)
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(4))
    return f"ORD-{_base36(millis).rjust(9, '0')}-{suffix}"


def apply_refund(db, machine, intent, refund_id: str, actor: str = "system"):
    """Move intent and order to (partially) refunded for a completed refund.

    Keyed on the provider refund id, so the admin request and the provider's
    refund webhook converge on one transition.
    """
    store = PaymentIntentStore(db)
    refunded = store.refunded_total(intent.id)
    full = refunded >= intent.amount
    store.update_status(
        intent.id,
        IntentStatus.REFUNDED if full else IntentStatus.PARTIALLY_REFUNDED,
    )
    event = OrderEvent.REFUND_FULL if full else OrderEvent.REFUND_PARTIAL
    return machine.apply(db, intent.order_id, event, cause_id=refund_id, actor=actor)


class OrderService:
    def __init__(self, session_factory, machine, providers):
        self.session_factory = session_factory
        self.machine = machine
        self.providers = providers

    # Orders

    def create_order(self, customer_ref: str, currency: str, items: Iterable[LineItemIn]) -> OrderView:
        items = [LineItemIn.model_validate(i) if isinstance(i, dict) else i for i in items]
        currency = (currency or "").upper()
        if not customer_ref:
            raise InvalidRequest("customer_ref is required")
        if currency not in settings.SUPPORTED_CURRENCIES:
            raise InvalidRequest(f"Unsupported currency: {currency}", currency=currency)
        if not items:
            raise InvalidRequest("Order must contain at least one item")
        for item in items:
            if item.quantity <= 0:
                raise InvalidRequest("Quantity must be positive", component_ref=item.component_ref)
            if item.unit_price < 0:
                raise InvalidRequest("Unit price must not be negative", component_ref=item.component_ref)

        total = sum(item.quantity * item.unit_price for item in items)
        if total <= 0:
            raise InvalidRequest("Order total must be positive")

        def work(db):
            order = Order(
                order_number=generate_order_number(),
                status=OrderStatus.PENDING.value,
                total_amount=total,
                currency=currency,
                customer_ref=customer_ref,
                payment_attempts=0,
            )
            order.items = [
                OrderItem(
                    position=position,
                    component_ref=item.component_ref,
                    name=item.name,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                )
                for position, item in enumerate(items)
            ]
            db.add(order)
            db.flush()
            return OrderView.from_row(order)

        view = run_in_transaction(self.session_factory, work)
        logger.info("order_created", order_id=view.id, order_number=view.order_number, total=total)
        return view

    def get_order(self, order_id: str) -> OrderView:
        db = self.session_factory()
        try:
            order = db.get(Order, order_id)
            if order is None:
                raise OrderNotFound(order_id=order_id)
            return OrderView.from_row(order)
        finally:
            db.close()

    def get_order_by_number(self, order_number: str) -> OrderView:
        db = self.session_factory()
        try:
            order = db.scalars(select(Order).filter_by(order_number=order_number)).first()
            if order is None:
                raise OrderNotFound(order_number=order_number)
            return OrderView.from_row(order)
        finally:
            db.close()

    # Checkout

    def _release(self, intent_id: str, provider: str) -> None:
        try:
            self.providers.get(provider).cancel(intent_id)
        except PaymentEngineError as exc:
            logger.warning("intent_release_failed", intent_id=intent_id, provider=provider, error=str(exc))

    def start_checkout(self, order_id: str, provider=Provider.STRIPE) -> CheckoutResult:
        adapter = self.providers.get(provider)

        db = self.session_factory()
        try:
            order = db.get(Order, order_id)
            if order is None:
                raise OrderNotFound(order_id=order_id)
            status = OrderStatus(order.status)
            if status not in PAYABLE:
                logger.info("checkout_refused", order_id=order_id, status=status.value)
                raise OrderNotPayable(order_id=order_id, status=status.value)
            active = PaymentIntentStore(db).active_for_order(order_id)
            if active is not None and status == OrderStatus.AWAITING_PAYMENT:
                return CheckoutResult(
                    order_id=order_id,
                    provider=Provider(active.provider),
                    intent_id=active.id,
                    client_continuation_token=active.client_token,
                    reused=True,
                )
            amount, currency, customer = order.total_amount, order.currency, order.customer_ref
            attempt = order.payment_attempts + 1
        finally:
            db.close()

        # Same key for the same attempt, so a retried request never opens a
        # second provider intent.
        idempotency_key = f"checkout-{order_id}-{attempt}"
        result = adapter.create_intent(order_id, amount, currency, customer, idempotency_key)

        def work(db):
            order = self.machine.load(db, order_id)
            store = PaymentIntentStore(db)
            try:
                intent = store.save(result, order_id, idempotency_key)
            except ActiveIntentExists as exc:
                active = store.get(exc.intent_id)
                return CheckoutResult(
                    order_id=order_id,
                    provider=Provider(active.provider),
                    intent_id=active.id,
                    client_continuation_token=active.client_token,
                    reused=True,
                ), []

            status = OrderStatus(order.status)
            effect_ids = []
            if status == OrderStatus.PENDING:
                effect_ids = self.machine.apply(
                    db, order_id, OrderEvent.CHECKOUT_STARTED, cause_id=idempotency_key, actor="customer"
                ).effect_ids
            elif status == OrderStatus.PAYMENT_FAILED:
                effect_ids = self.machine.apply(
                    db, order_id, OrderEvent.CHECKOUT_RETRIED, cause_id=idempotency_key, actor="customer"
                ).effect_ids
            elif status != OrderStatus.AWAITING_PAYMENT:
                raise OrderNotPayable(order_id=order_id, status=status.value)

            order.payment_attempts = max(order.payment_attempts, attempt)
            return CheckoutResult(
                order_id=order_id,
                provider=Provider(intent.provider),
                intent_id=intent.id,
                client_continuation_token=intent.client_token,
            ), effect_ids

        try:
            checkout, effect_ids = run_in_transaction(self.session_factory, work)
        except OrderNotPayable:
            # Lost a race with a cancel; the fresh provider intent is orphaned.
            self._release(result.intent_id, result.provider.value)
            raise

        if checkout.reused and checkout.intent_id != result.intent_id:
            self._release(result.intent_id, result.provider.value)
        self.machine.dispatch(effect_ids)
        logger.info(
            "checkout_started",
            order_id=order_id,
            intent_id=checkout.intent_id,
            provider=checkout.provider.value,
            reused=checkout.reused,
        )
        return checkout

    def confirm_payment(self, intent_id: str) -> IntentResult:
        db = self.session_factory()
        try:
            provider = PaymentIntentStore(db).get(intent_id).provider
        finally:
            db.close()
        adapter = self.providers.get(provider)

        try:
            result = adapter.confirm_or_capture(intent_id)
        except ProviderUnavailable:
            # The capture may or may not have happened; ask the provider
            # rather than guessing. A second failure leaves the order as is.
            logger.warning("confirm_timed_out", intent_id=intent_id, provider=provider)
            result = adapter.fetch_status(intent_id)

        def work(db):
            store = PaymentIntentStore(db)
            try:
                intent = store.update_status(intent_id, result.status, reference_id=result.reference_id)
            except IllegalIntentStatus:
                intent = store.get(intent_id)
            return result.model_copy(update={"status": IntentStatus(intent.status)})

        return run_in_transaction(self.session_factory, work)

    def cancel_order(self, order_id: str, actor: str = "customer") -> OrderView:
        def work(db):
            transition = self.machine.apply(
                db, order_id, OrderEvent.CANCEL, cause_id=f"cancel-{order_id}", actor=actor
            )
            released = []
            store = PaymentIntentStore(db)
            for intent in store.for_order(order_id):
                if IntentStatus(intent.status) in ACTIVE_INTENT_STATUSES:
                    store.update_status(intent.id, IntentStatus.FAILED)
                    released.append((intent.id, intent.provider))
            return OrderView.from_row(transition.order), released, transition.effect_ids

        view, released, effect_ids = run_in_transaction(self.session_factory, work)
        for intent_id, provider in released:
            self._release(intent_id, provider)
        self.machine.dispatch(effect_ids)
        return view

    # Refunds

    def request_refund(self, order_id: str, amount: Optional[int] = None,
                       reason=RefundReason.REQUESTED_BY_CUSTOMER) -> RefundOutcome:
        reason = RefundReason(reason)

        db = self.session_factory()
        try:
            order = db.get(Order, order_id)
            if order is None:
                raise OrderNotFound(order_id=order_id)
            if OrderStatus(order.status) not in REFUNDABLE:
                raise OrderNotRefundable(order_id=order_id, status=order.status)
            store = PaymentIntentStore(db)
            intent = store.captured_for_order(order_id)
            if intent is None or IntentStatus(intent.status) == IntentStatus.REFUNDED:
                raise OrderNotRefundable(order_id=order_id)
            already = store.refunded_total(intent.id)
            remaining = intent.amount - already
            intent_id, provider = intent.id, intent.provider
            capture_id, currency = intent.reference_id, intent.currency
        finally:
            db.close()

        if remaining <= 0:
            raise OrderNotRefundable("Payment is already fully refunded", order_id=order_id)
        if amount is None:
            amount = remaining
        if amount <= 0:
            raise InvalidRequest("Refund amount must be positive", amount=amount)
        if amount > remaining:
            logger.info("refund_refused", order_id=order_id, requested=amount, remaining=remaining)
            raise AmountExceedsCaptured(order_id=order_id, requested=amount, remaining=remaining)

        result = self.providers.get(provider).refund(
            intent_id,
            amount,
            reason,
            idempotency_key=f"refund-{intent_id}-{already}-{amount}",
            capture_id=capture_id,
            currency=currency,
        )

        def work(db):
            store = PaymentIntentStore(db)
            store.record_refund(result, reason.value)
            effect_ids = []
            order = self.machine.load(db, order_id)
            if result.status == RefundStatus.SUCCEEDED:
                transition = apply_refund(db, self.machine, store.get(intent_id), result.refund_id, actor="admin")
                order, effect_ids = transition.order, transition.effect_ids
            return RefundOutcome(
                refund_id=result.refund_id,
                refund_status=result.status,
                amount=result.amount,
                new_order_status=OrderStatus(order.status),
            ), effect_ids

        outcome, effect_ids = run_in_transaction(self.session_factory, work)
        self.machine.dispatch(effect_ids)
        logger.info(
            "refund_requested",
            order_id=order_id,
            refund_id=outcome.refund_id,
            amount=outcome.amount,
            order_status=outcome.new_order_status.value,
        )
        return outcome

    # Fulfillment

    def _advance(self, order_id: str, event: OrderEvent, cause_id: str, actor: str) -> OrderView:
        def work(db):
            transition = self.machine.apply(db, order_id, event, cause_id=cause_id, actor=actor)
            return OrderView.from_row(transition.order), transition.effect_ids

        view, effect_ids = run_in_transaction(self.session_factory, work)
        self.machine.dispatch(effect_ids)
        return view

    def begin_fulfillment(self, order_id: str) -> OrderView:
        return self._advance(
            order_id, OrderEvent.FULFILLMENT_STARTED, f"fulfillment-start-{order_id}", "fulfillment"
        )

    def complete_fulfillment(self, order_id: str) -> OrderView:
        return self._advance(
            order_id, OrderEvent.FULFILLMENT_COMPLETED, f"fulfillment-done-{order_id}", "fulfillment"
        )

    # Provider info

    def available_payment_methods(self, currency: str = None) -> list:
        currency = (currency or settings.DEFAULT_CURRENCY).upper()
        enabled = self.providers.enabled()
        methods = []
        if Provider.STRIPE in enabled:
            methods.append({"id": "stripe_card", "name": "Credit/Debit Card", "provider": "stripe", "type": "card"})
            if currency == "EUR":
                methods.append({"id": "stripe_sepa", "name": "SEPA Direct Debit", "provider": "stripe", "type": "bank_debit"})
        if Provider.PAYPAL in enabled:
            methods.append({"id": "paypal", "name": "PayPal", "provider": "paypal", "type": "wallet"})
        return methods

    def provider_status(self) -> dict:
        enabled = self.providers.enabled()
        return {
            "stripe": {
                "enabled": Provider.STRIPE in enabled,
                "webhook_configured": bool(settings.STRIPE_WEBHOOK_SECRET),
            },
            "paypal": {
                "enabled": Provider.PAYPAL in enabled,
                "webhook_configured": bool(settings.PAYPAL_WEBHOOK_ID),
            },
        }
