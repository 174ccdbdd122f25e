"""Inbound provider webhooks.

A delivery is verified by its adapter before anything else happens, then
deduplicated on the provider event id, mapped onto the order state machine
and marked processed in the same commit as the transition it caused. A
transition the state machine refuses (late success on a cancelled order,
a second capture) is stored as a reconciliation conflict and still
acknowledged, because the provider redelivering it would not help.
"""
from datetime import timedelta
from typing import Mapping

from sqlalchemy import delete, select
import structlog

from humanoid_orders.config import settings
from humanoid_orders.database import run_in_transaction
from humanoid_orders.domain import (
    ConflictKind,
    ConflictView,
    EventType,
    IntentStatus,
    OrderEvent,
    OrderStatus,
    ReconcileOutcome,
    RefundReason,
    RefundResult,
    RefundStatus,
)
from humanoid_orders.errors import (
    AmountExceedsCaptured,
    ConflictNotFound,
    DuplicateSuccess,
    IllegalIntentStatus,
    InvalidTransition,
    PaymentEngineError,
)
from humanoid_orders.intents import PaymentIntentStore
from humanoid_orders.models import Order, ReconciliationConflict, WebhookEvent, utcnow
from humanoid_orders.orders import apply_refund

logger = structlog.get_logger(component="reconciler")

INTENT_STATUS_FOR = {
    EventType.PAYMENT_SUCCEEDED: IntentStatus.SUCCEEDED,
    EventType.PAYMENT_FAILED: IntentStatus.FAILED,
    EventType.REQUIRES_ACTION: IntentStatus.REQUIRES_ACTION,
}

ORDER_EVENT_FOR = {
    EventType.PAYMENT_SUCCEEDED: OrderEvent.PAYMENT_SUCCEEDED,
    EventType.PAYMENT_FAILED: OrderEvent.PAYMENT_FAILED,
}


def record_conflict(db, kind: ConflictKind, event=None, order_id=None, intent_id=None, detail=None):
    conflict = ReconciliationConflict(
        kind=kind.value,
        provider=event.provider.value if event else None,
        provider_event_id=event.provider_event_id if event else None,
        order_id=order_id,
        intent_id=intent_id,
        detail=detail,
    )
    db.add(conflict)
    db.flush()
    logger.error(
        "reconciliation_conflict",
        kind=kind.value,
        order_id=order_id,
        intent_id=intent_id,
        provider_event_id=conflict.provider_event_id,
        detail=detail,
    )
    return conflict


class WebhookReconciler:
    def __init__(self, session_factory, machine, providers):
        self.session_factory = session_factory
        self.machine = machine
        self.providers = providers

    def handle(self, provider, raw_payload: bytes, headers: Mapping[str, str]) -> ReconcileOutcome:
        adapter = self.providers.get(provider)
        # Raises InvalidSignature before the payload or the store is touched.
        event = adapter.parse_webhook(raw_payload, headers, adapter.webhook_secret)
        if event is None:
            return ReconcileOutcome(outcome="ignored")

        fetched = self._lookup_unknown_intent(adapter, event)

        log = logger.bind(
            provider=event.provider.value,
            provider_event_id=event.provider_event_id,
            event_type=event.type.value,
        )

        try:
            outcome, effect_ids = run_in_transaction(
                self.session_factory, lambda db: self._reconcile(db, event, fetched)
            )
        except InvalidTransition as exc:
            # The refused transition was rolled back with everything else in
            # its unit of work; keep what the provider told us about the
            # payment itself and park the order side for review.
            outcome = run_in_transaction(
                self.session_factory, lambda db: self._record_refusal(db, event, exc, fetched)
            )
            effect_ids = []

        self.machine.dispatch(effect_ids)
        log.info("webhook_reconciled", outcome=outcome.outcome, order_id=outcome.order_id)
        return outcome

    def _lookup_unknown_intent(self, adapter, event):
        """Ask the provider about a payment we only know through the order hint.

        Runs before the unit of work so no provider call happens while the
        order row is held. Returns None when nothing needs fetching or the
        provider cannot tell us.
        """
        if event.type not in INTENT_STATUS_FOR or not event.intent_id or not event.order_hint:
            return None
        db = self.session_factory()
        try:
            intent, order_id = self._resolve(db, event)
        finally:
            db.close()
        if intent is not None or order_id is None:
            return None
        try:
            return adapter.fetch_status(event.intent_id)
        except PaymentEngineError as exc:
            logger.warning("intent_lookup_failed", intent_id=event.intent_id, error=str(exc))
            return None

    # Units of work

    def _begin(self, db, event):
        record = db.get(WebhookEvent, (event.provider_event_id, event.provider.value))
        if record is None:
            record = WebhookEvent(
                id=event.provider_event_id,
                provider=event.provider.value,
                event_type=event.raw_type or event.type.value,
            )
            db.add(record)
        return record

    def _finish(self, db, record, event, outcome: str, order_id=None) -> ReconcileOutcome:
        record.processed = True
        record.outcome = outcome
        record.processed_at = utcnow()
        db.flush()
        status = None
        if order_id:
            order = db.get(Order, order_id)
            status = OrderStatus(order.status) if order else None
        return ReconcileOutcome(
            provider_event_id=event.provider_event_id,
            outcome=outcome,
            order_id=order_id,
            order_status=status,
        )

    def _resolve(self, db, event):
        store = PaymentIntentStore(db)
        intent = None
        if event.intent_id:
            intent = store.find_by_id(event.intent_id)
        if intent is None and event.reference_id:
            intent = store.find_by_reference(event.reference_id)
        if intent is not None:
            return intent, intent.order_id
        if event.order_hint and db.get(Order, event.order_hint) is not None:
            return None, event.order_hint
        return None, None

    def _reconcile(self, db, event, fetched=None):
        record = self._begin(db, event)
        if record.processed:
            logger.info("webhook_duplicate", provider_event_id=event.provider_event_id)
            return ReconcileOutcome(provider_event_id=event.provider_event_id, outcome="duplicate"), []

        intent, order_id = self._resolve(db, event)
        if order_id is None:
            record_conflict(
                db,
                ConflictKind.ORDER_NOT_FOUND,
                event,
                intent_id=event.intent_id,
                detail=f"No order for {event.type.value} (hint={event.order_hint})",
            )
            return self._finish(db, record, event, "order_not_found"), []

        if event.type == EventType.DISPUTE_OPENED:
            record_conflict(
                db,
                ConflictKind.DISPUTE,
                event,
                order_id=order_id,
                intent_id=intent.id if intent else None,
                detail="Dispute opened with the provider",
            )
            return self._finish(db, record, event, "conflict", order_id), []

        if event.type == EventType.REFUND_COMPLETED:
            return self._refund(db, record, event, intent, order_id)

        if intent is None:
            intent, outcome = self._adopt(db, event, fetched, order_id)
            if outcome is not None:
                return self._finish(db, record, event, outcome, order_id), []

        outcome = self._update_intent(db, event, intent, order_id)
        if outcome is not None:
            return self._finish(db, record, event, outcome, order_id), []

        order_event = ORDER_EVENT_FOR.get(event.type)
        if order_event is None:
            return self._finish(db, record, event, "intent_updated", order_id), []

        transition = self.machine.apply(
            db, order_id, order_event, cause_id=event.provider_event_id, actor=f"webhook:{event.provider.value}"
        )
        outcome = "applied" if transition.applied else "replayed"
        return self._finish(db, record, event, outcome, order_id), transition.effect_ids

    def _adopt(self, db, event, fetched, order_id):
        """Store a provider payment that reached us only through the order hint.

        The order moves only once the payment is on record, so a refund can
        find it later. Returns ``(intent, None)`` or ``(None, outcome)``.
        """
        order = db.get(Order, order_id)
        expected = INTENT_STATUS_FOR[event.type]
        if (
            fetched is None
            or fetched.intent_id != event.intent_id
            or fetched.status != expected
            or fetched.amount != order.total_amount
            or fetched.currency != order.currency
        ):
            record_conflict(
                db,
                ConflictKind.UNKNOWN_INTENT,
                event,
                order_id=order_id,
                intent_id=event.intent_id,
                detail=f"Provider could not confirm {event.type.value} for unknown payment {event.intent_id}",
            )
            return None, "conflict"

        store = PaymentIntentStore(db)
        captured = store.captured_for_order(order_id)
        if captured is not None and expected == IntentStatus.SUCCEEDED:
            record_conflict(
                db,
                ConflictKind.DUPLICATE_SUCCESS,
                event,
                order_id=order_id,
                intent_id=event.intent_id,
                detail=f"Order already captured by {captured.id}; refund one manually",
            )
            return None, "conflict"

        active = store.active_for_order(order_id)
        if active is not None:
            if expected != IntentStatus.SUCCEEDED:
                return None, "stale"
            # The customer paid through another attempt; the open one is dead.
            store.update_status(active.id, IntentStatus.FAILED)
        intent = store.save(
            fetched.model_copy(update={"status": IntentStatus.CREATED}),
            order_id,
            f"webhook-{event.provider_event_id}",
        )
        logger.warning(
            "intent_adopted",
            order_id=order_id,
            intent_id=intent.id,
            superseded=active.id if active else None,
        )
        return intent, None

    def _update_intent(self, db, event, intent, order_id):
        """Apply the intent side of a payment event.

        Returns an outcome when the order must not be touched, otherwise None.
        """
        store = PaymentIntentStore(db)
        try:
            store.update_status(intent.id, INTENT_STATUS_FOR[event.type], reference_id=event.reference_id)
        except DuplicateSuccess:
            record_conflict(
                db,
                ConflictKind.DUPLICATE_SUCCESS,
                event,
                order_id=order_id,
                intent_id=intent.id,
                detail="Second captured payment for the order; refund one manually",
            )
            return "conflict"
        except IllegalIntentStatus:
            logger.info("webhook_stale", intent_id=intent.id, intent_status=intent.status)
            return "stale"

        if event.type == EventType.PAYMENT_FAILED:
            active = store.active_for_order(order_id)
            if active is not None and active.id != intent.id:
                # An older attempt failing must not fail the current one.
                return "stale"
        return None

    def _refund(self, db, record, event, intent, order_id):
        if intent is None:
            record_conflict(
                db,
                ConflictKind.ORDER_NOT_FOUND,
                event,
                order_id=order_id,
                detail="Refund for an unknown payment",
            )
            return self._finish(db, record, event, "order_not_found", order_id), []

        store = PaymentIntentStore(db)
        amount = event.amount
        if amount is None:
            amount = store.remaining_refundable(intent)
        try:
            store.record_refund(
                RefundResult(
                    refund_id=event.refund_id,
                    intent_id=intent.id,
                    amount=amount,
                    currency=intent.currency,
                    status=RefundStatus.SUCCEEDED,
                ),
                RefundReason.OTHER.value,
            )
        except AmountExceedsCaptured:
            record_conflict(
                db,
                ConflictKind.REFUND_OVERFLOW,
                event,
                order_id=order_id,
                intent_id=intent.id,
                detail=f"Refund {event.refund_id} of {amount} exceeds the captured amount",
            )
            return self._finish(db, record, event, "conflict", order_id), []

        transition = apply_refund(
            db, self.machine, intent, event.refund_id, actor=f"webhook:{event.provider.value}"
        )
        outcome = "applied" if transition.applied else "replayed"
        return self._finish(db, record, event, outcome, order_id), transition.effect_ids

    def _record_refusal(self, db, event, exc: InvalidTransition, fetched=None):
        record = self._begin(db, event)
        if record.processed:
            return ReconcileOutcome(provider_event_id=event.provider_event_id, outcome="duplicate")

        intent, order_id = self._resolve(db, event)
        if intent is None and fetched is not None and event.type in INTENT_STATUS_FOR:
            intent, _ = self._adopt(db, event, fetched, order_id)
        store = PaymentIntentStore(db)
        if intent is not None:
            try:
                if event.type == EventType.REFUND_COMPLETED:
                    store.record_refund(
                        RefundResult(
                            refund_id=event.refund_id,
                            intent_id=intent.id,
                            amount=event.amount if event.amount is not None else store.remaining_refundable(intent),
                            currency=intent.currency,
                            status=RefundStatus.SUCCEEDED,
                        ),
                        RefundReason.OTHER.value,
                    )
                elif event.type in INTENT_STATUS_FOR:
                    store.update_status(intent.id, INTENT_STATUS_FOR[event.type], reference_id=event.reference_id)
            except (AmountExceedsCaptured, DuplicateSuccess, IllegalIntentStatus) as err:
                logger.warning("intent_update_skipped", intent_id=intent.id, error=str(err))

        record_conflict(
            db,
            ConflictKind.INVALID_TRANSITION,
            event,
            order_id=order_id,
            intent_id=intent.id if intent else None,
            detail=f"{exc.event} refused while order was {exc.current}",
        )
        return self._finish(db, record, event, "conflict", order_id)

    # Maintenance

    def purge_webhook_events(self, now=None) -> int:
        cutoff = (now or utcnow()) - timedelta(days=settings.WEBHOOK_RETENTION_DAYS)

        def work(db):
            return db.execute(
                delete(WebhookEvent)
                .where(WebhookEvent.processed.is_(True))
                .where(WebhookEvent.received_at < cutoff)
            ).rowcount

        purged = run_in_transaction(self.session_factory, work)
        logger.info("webhook_events_purged", count=purged)
        return purged

    def list_conflicts(self, include_resolved: bool = False) -> list:
        db = self.session_factory()
        try:
            query = select(ReconciliationConflict).order_by(ReconciliationConflict.id)
            if not include_resolved:
                query = query.where(ReconciliationConflict.resolved.is_(False))
            return [ConflictView.model_validate(c, from_attributes=True) for c in db.scalars(query)]
        finally:
            db.close()

    def resolve_conflict(self, conflict_id: int) -> ConflictView:
        def work(db):
            conflict = db.get(ReconciliationConflict, conflict_id)
            if conflict is None:
                raise ConflictNotFound(conflict_id=conflict_id)
            if not conflict.resolved:
                conflict.resolved = True
                conflict.resolved_at = utcnow()
                db.flush()
            return ConflictView.model_validate(conflict, from_attributes=True)

        view = run_in_transaction(self.session_factory, work)
        logger.info("conflict_resolved", conflict_id=conflict_id)
        return view
