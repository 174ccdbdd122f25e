"""Order lifecycle.

Every status change goes through ``OrderStateMachine.apply``. A change is
keyed on ``(order_id, target_status, cause_id)``: the first application
writes the new status, an ``order_transitions`` row and one
``order_effects`` row per side effect in the caller's transaction; any
later application with the same key is a no-op. Effects run only after
the transaction commits (``dispatch``), and a failed effect stays pending
for ``dispatch_pending`` to retry, so collaborators see at-least-once
delivery while each transition produces its effects exactly once.

Two writers racing on the same order are serialized by the ``version``
column: the loser gets ``StaleDataError`` at flush and its unit of work is
retried by ``run_in_transaction`` against the fresh state.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import select, update
import structlog

from humanoid_orders.domain import OrderEvent, OrderStatus
from humanoid_orders.errors import InvalidTransition, OrderNotFound
from humanoid_orders.models import Order, OrderEffect, OrderTransition, utcnow

logger = structlog.get_logger(component="state_machine")

S = OrderStatus
E = OrderEvent

# event -> (target status, statuses it may leave from)
EDGES = {
    E.CHECKOUT_STARTED: (S.AWAITING_PAYMENT, {S.PENDING}),
    E.PAYMENT_SUCCEEDED: (S.PAID, {S.AWAITING_PAYMENT}),
    E.PAYMENT_FAILED: (S.PAYMENT_FAILED, {S.AWAITING_PAYMENT}),
    E.CHECKOUT_RETRIED: (S.AWAITING_PAYMENT, {S.PAYMENT_FAILED}),
    E.CANCEL: (S.CANCELLED, {S.PENDING, S.AWAITING_PAYMENT}),
    E.FULFILLMENT_STARTED: (S.PROCESSING, {S.PAID}),
    E.FULFILLMENT_COMPLETED: (S.FULFILLED, {S.PROCESSING}),
    E.REFUND_FULL: (S.REFUNDED, {S.PAID, S.PROCESSING, S.PARTIALLY_REFUNDED}),
    E.REFUND_PARTIAL: (S.PARTIALLY_REFUNDED, {S.PAID, S.PROCESSING, S.PARTIALLY_REFUNDED}),
}

# Intent creation and release happen in the checkout service, inside the
# same transaction as the transition itself.
SIDE_EFFECTS = {
    E.PAYMENT_SUCCEEDED: [
        ("fulfillment", None),
        ("notify", "order_confirmation"),
        ("hook", "on_order_paid"),
    ],
    E.PAYMENT_FAILED: [("notify", "payment_failed")],
    E.FULFILLMENT_COMPLETED: [
        ("notify", "order_fulfilled"),
        ("hook", "on_order_fulfilled"),
    ],
    E.REFUND_FULL: [
        ("notify", "refund_issued"),
        ("hook", "on_order_refunded"),
    ],
    E.REFUND_PARTIAL: [
        ("notify", "refund_issued"),
        ("hook", "on_order_refunded"),
    ],
}

TIMESTAMPS = {
    S.PAID: "paid_at",
    S.PAYMENT_FAILED: "failed_at",
    S.FULFILLED: "fulfilled_at",
    S.CANCELLED: "cancelled_at",
    S.REFUNDED: "refunded_at",
    S.PARTIALLY_REFUNDED: "refunded_at",
}

HOOKS = ("on_order_paid", "on_order_fulfilled", "on_order_refunded")


def target_of(event) -> OrderStatus:
    return EDGES[OrderEvent(event)][0]


def can_apply(status, event) -> bool:
    return OrderStatus(status) in EDGES[OrderEvent(event)][1]


@dataclass
class Transition:
    order: Order
    applied: bool
    effect_ids: list = field(default_factory=list)


class OrderStateMachine:
    def __init__(self, session_factory, fulfillment, notifier):
        self.session_factory = session_factory
        self.fulfillment = fulfillment
        self.notifier = notifier
        self._hooks = defaultdict(list)

    # Hooks exposed to the catalog / notification / UI layers

    def subscribe(self, hook: str, callback):
        if hook not in HOOKS:
            raise ValueError(f"Unknown hook: {hook}")
        self._hooks[hook].append(callback)
        return callback

    def on_order_paid(self, callback):
        return self.subscribe("on_order_paid", callback)

    def on_order_fulfilled(self, callback):
        return self.subscribe("on_order_fulfilled", callback)

    def on_order_refunded(self, callback):
        return self.subscribe("on_order_refunded", callback)

    # Transitions

    def load(self, db, order_id: str) -> Order:
        order = db.get(Order, order_id, with_for_update=True)
        if order is None:
            raise OrderNotFound(order_id=order_id)
        return order

    def apply(self, db, order_id: str, event, cause_id: str, actor: str = "system") -> Transition:
        event = OrderEvent(event)
        target, sources = EDGES[event]
        order = self.load(db, order_id)

        replay = db.scalars(
            select(OrderTransition).filter_by(
                order_id=order_id, to_status=target.value, cause_id=cause_id
            )
        ).first()
        if replay is not None:
            logger.info(
                "transition_replayed",
                order_id=order_id,
                to_status=target.value,
                cause_id=cause_id,
            )
            return Transition(order=order, applied=False)

        current = OrderStatus(order.status)
        if current not in sources:
            logger.warning(
                "invalid_transition",
                order_id=order_id,
                event_name=event.value,
                edge=f"{current.value}->{target.value}",
                cause_id=cause_id,
            )
            raise InvalidTransition(current, event, order_id=order_id)

        order.status = target.value
        stamp = TIMESTAMPS.get(target)
        if stamp:
            setattr(order, stamp, utcnow())

        transition = OrderTransition(
            order_id=order_id,
            from_status=current.value,
            to_status=target.value,
            event=event.value,
            cause_id=cause_id,
            actor=actor,
        )
        db.add(transition)
        db.flush()

        effects = [
            OrderEffect(transition_id=transition.id, order_id=order_id, kind=kind, detail=detail)
            for kind, detail in SIDE_EFFECTS.get(event, [])
        ]
        db.add_all(effects)
        db.flush()

        logger.info(
            "transition_applied",
            order_id=order_id,
            edge=f"{current.value}->{target.value}",
            cause_id=cause_id,
            actor=actor,
        )
        return Transition(order=order, applied=True, effect_ids=[e.id for e in effects])

    # Effects

    def _run_effect(self, effect: OrderEffect) -> None:
        if effect.kind == "fulfillment":
            self.fulfillment.start(effect.order_id)
        elif effect.kind == "notify":
            self.notifier.send(effect.order_id, effect.detail)
        elif effect.kind == "hook":
            for callback in self._hooks[effect.detail]:
                callback(effect.order_id)
        else:
            raise ValueError(f"Unknown effect kind: {effect.kind}")

    def _claim(self, db, effect_id: int, stale_before=None) -> bool:
        claimable = OrderEffect.status == "pending"
        if stale_before is not None:
            # A claim older than the cutoff belongs to a worker that died.
            claimable = claimable | (
                (OrderEffect.status == "dispatching") & (OrderEffect.claimed_at < stale_before)
            )
        claimed = db.execute(
            update(OrderEffect)
            .where(OrderEffect.id == effect_id)
            .where(claimable)
            .values(status="dispatching", claimed_at=utcnow(), attempts=OrderEffect.attempts + 1)
        )
        db.commit()
        return claimed.rowcount == 1

    def dispatch(self, effect_ids, stale_before=None) -> int:
        """Run committed effects. Returns how many ran successfully."""
        done = 0
        db = self.session_factory()
        try:
            for effect_id in effect_ids:
                if not self._claim(db, effect_id, stale_before):
                    continue
                effect = db.get(OrderEffect, effect_id)
                try:
                    self._run_effect(effect)
                except Exception as exc:
                    logger.exception(
                        "effect_failed",
                        order_id=effect.order_id,
                        kind=effect.kind,
                        detail=effect.detail,
                    )
                    effect.status = "pending"
                    effect.last_error = str(exc)
                else:
                    effect.status = "done"
                    effect.dispatched_at = utcnow()
                    done += 1
                db.commit()
        finally:
            db.close()
        return done

    def dispatch_pending(self, order_id: str = None, stale_after: timedelta = timedelta(minutes=5)) -> int:
        """Re-drive effects left pending, or stuck mid-dispatch by a crash."""
        stale_before = utcnow() - stale_after
        db = self.session_factory()
        try:
            query = select(OrderEffect.id).where(
                (OrderEffect.status == "pending")
                | ((OrderEffect.status == "dispatching") & (OrderEffect.claimed_at < stale_before))
            )
            if order_id:
                query = query.where(OrderEffect.order_id == order_id)
            ids = list(db.scalars(query.order_by(OrderEffect.id)))
        finally:
            db.close()
        return self.dispatch(ids, stale_before=stale_before)
