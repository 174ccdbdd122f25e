"""Durable record of payment attempts and their refunds.

Every method works inside the caller's session so intent writes commit in
the same transaction as the order transition they belong to. Concurrent
writers are caught by the ``version`` column on ``PaymentIntent``.
"""
from typing import Optional

from sqlalchemy import func, select
import structlog

from humanoid_orders.domain import (
    ACTIVE_INTENT_STATUSES,
    CAPTURED_INTENT_STATUSES,
    IntentResult,
    IntentStatus,
    RefundResult,
    RefundStatus,
)
from humanoid_orders.errors import (
    ActiveIntentExists,
    AmountExceedsCaptured,
    DuplicateSuccess,
    IllegalIntentStatus,
    IntentNotFound,
)
from humanoid_orders.models import PaymentIntent, Refund, utcnow

logger = structlog.get_logger(component="intent_store")

# Provider-reported moves the store accepts. Anything else is a stale or
# out-of-order report and is refused rather than overwriting fresher data.
ALLOWED_INTENT_MOVES = {
    IntentStatus.CREATED: {IntentStatus.REQUIRES_ACTION, IntentStatus.SUCCEEDED, IntentStatus.FAILED},
    IntentStatus.REQUIRES_ACTION: {IntentStatus.CREATED, IntentStatus.SUCCEEDED, IntentStatus.FAILED},
    IntentStatus.FAILED: {IntentStatus.SUCCEEDED},
    IntentStatus.SUCCEEDED: {IntentStatus.PARTIALLY_REFUNDED, IntentStatus.REFUNDED},
    IntentStatus.PARTIALLY_REFUNDED: {IntentStatus.PARTIALLY_REFUNDED, IntentStatus.REFUNDED},
    IntentStatus.REFUNDED: set(),
}


class PaymentIntentStore:
    def __init__(self, db):
        self.db = db

    def find_by_id(self, intent_id: str) -> Optional[PaymentIntent]:
        return self.db.get(PaymentIntent, intent_id)

    def get(self, intent_id: str) -> PaymentIntent:
        intent = self.find_by_id(intent_id)
        if intent is None:
            raise IntentNotFound(intent_id=intent_id)
        return intent

    def find_by_reference(self, reference_id: str) -> Optional[PaymentIntent]:
        return self.db.scalars(
            select(PaymentIntent).filter_by(reference_id=reference_id)
        ).first()

    def for_order(self, order_id: str) -> list:
        return list(self.db.scalars(
            select(PaymentIntent).filter_by(order_id=order_id).order_by(PaymentIntent.created_at)
        ))

    def active_for_order(self, order_id: str) -> Optional[PaymentIntent]:
        return self.db.scalars(
            select(PaymentIntent)
            .filter_by(order_id=order_id)
            .where(PaymentIntent.status.in_([s.value for s in ACTIVE_INTENT_STATUSES]))
        ).first()

    def captured_for_order(self, order_id: str, exclude: str = None) -> Optional[PaymentIntent]:
        query = (
            select(PaymentIntent)
            .filter_by(order_id=order_id)
            .where(PaymentIntent.status.in_([s.value for s in CAPTURED_INTENT_STATUSES]))
        )
        if exclude:
            query = query.where(PaymentIntent.id != exclude)
        return self.db.scalars(query).first()

    def save(self, result: IntentResult, order_id: str, idempotency_key: str) -> PaymentIntent:
        existing = self.find_by_id(result.intent_id)
        if existing is not None:
            # Same provider intent returned for a replayed idempotency key.
            return existing

        active = self.active_for_order(order_id)
        if active is not None:
            raise ActiveIntentExists(
                f"Order {order_id} already has an active payment",
                intent_id=active.id,
                order_id=order_id,
            )

        intent = PaymentIntent(
            id=result.intent_id,
            provider=result.provider.value,
            order_id=order_id,
            amount=result.amount,
            currency=result.currency,
            status=result.status.value,
            idempotency_key=idempotency_key,
            client_token=result.client_token,
            reference_id=result.reference_id,
        )
        self.db.add(intent)
        self.db.flush()
        logger.info("intent_saved", intent_id=intent.id, order_id=order_id, provider=intent.provider)
        return intent

    def update_status(self, intent_id: str, new_status, reference_id: str = None) -> PaymentIntent:
        intent = self.get(intent_id)
        new_status = IntentStatus(new_status)
        current = IntentStatus(intent.status)

        if reference_id and not intent.reference_id:
            intent.reference_id = reference_id

        if new_status == current:
            return intent
        if new_status not in ALLOWED_INTENT_MOVES[current]:
            logger.warning(
                "intent_status_refused",
                intent_id=intent_id,
                current=current.value,
                attempted=new_status.value,
            )
            raise IllegalIntentStatus(
                f"Intent {intent_id} cannot move from {current.value} to {new_status.value}",
                intent_id=intent_id,
            )

        if new_status == IntentStatus.SUCCEEDED:
            other = self.captured_for_order(intent.order_id, exclude=intent.id)
            if other is not None:
                logger.error(
                    "duplicate_success",
                    order_id=intent.order_id,
                    intent_id=intent_id,
                    captured_intent_id=other.id,
                )
                raise DuplicateSuccess(
                    f"Order {intent.order_id} already captured by {other.id}",
                    intent_id=intent_id,
                    order_id=intent.order_id,
                )
            intent.succeeded_at = utcnow()

        intent.status = new_status.value
        self.db.flush()
        logger.info("intent_status_updated", intent_id=intent_id, status=new_status.value)
        return intent

    # Refunds

    def refunded_total(self, intent_id: str, exclude: str = None) -> int:
        query = (
            select(func.coalesce(func.sum(Refund.amount), 0))
            .where(Refund.intent_id == intent_id)
            .where(Refund.status != RefundStatus.FAILED.value)
        )
        if exclude:
            query = query.where(Refund.id != exclude)
        return self.db.scalar(query)

    def remaining_refundable(self, intent: PaymentIntent) -> int:
        return intent.amount - self.refunded_total(intent.id)

    def record_refund(self, result: RefundResult, reason: str) -> Refund:
        intent = self.get(result.intent_id)
        refund = self.db.get(Refund, result.refund_id)

        if refund is None:
            if result.status != RefundStatus.FAILED:
                already = self.refunded_total(intent.id)
                if already + result.amount > intent.amount:
                    raise AmountExceedsCaptured(
                        f"Refunds for {intent.id} would exceed the captured amount",
                        intent_id=intent.id,
                        captured=intent.amount,
                        refunded=already,
                        requested=result.amount,
                    )
            refund = Refund(
                id=result.refund_id,
                intent_id=intent.id,
                provider=intent.provider,
                amount=result.amount,
                currency=result.currency or intent.currency,
                reason=reason,
                status=result.status.value,
            )
            self.db.add(refund)
        elif refund.status != RefundStatus.SUCCEEDED.value:
            refund.status = result.status.value
        self.db.flush()
        return refund
