from datetime import datetime, timezone
import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from humanoid_orders.database import Base


def utcnow():
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=lambda: new_id("ord"))
    order_number = Column(String, unique=True, index=True, nullable=False)
    status = Column(String, nullable=False, index=True)
    total_amount = Column(Integer, nullable=False)         # minor units
    currency = Column(String(3), nullable=False)
    customer_ref = Column(String, nullable=False, index=True)
    payment_attempts = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    paid_at = Column(DateTime)
    failed_at = Column(DateTime)
    fulfilled_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    refunded_at = Column(DateTime)

    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.position")
    intents = relationship("PaymentIntent", back_populates="order")

    __mapper_args__ = {"version_id_col": version}


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    component_ref = Column(String, nullable=False)
    name = Column(String)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)           # snapshot at order time

    order = relationship("Order", back_populates="items")


class PaymentIntent(Base):
    __tablename__ = "payment_intents"

    id = Column(String, primary_key=True)                  # provider-assigned id
    provider = Column(String, nullable=False)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String, nullable=False)
    idempotency_key = Column(String, nullable=False)
    client_token = Column(String)
    # PayPal reports captures and refunds against the capture id.
    reference_id = Column(String, index=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    succeeded_at = Column(DateTime)

    order = relationship("Order", back_populates="intents")
    refunds = relationship("Refund", back_populates="intent")

    __mapper_args__ = {"version_id_col": version}


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(String, primary_key=True)                  # provider-assigned id
    intent_id = Column(String, ForeignKey("payment_intents.id"), nullable=False, index=True)
    provider = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    reason = Column(String, nullable=False)
    status = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    intent = relationship("PaymentIntent", back_populates="refunds")


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(String, primary_key=True)                  # provider event id
    provider = Column(String, primary_key=True)
    event_type = Column(String)
    processed = Column(Boolean, nullable=False, default=False)
    outcome = Column(String)
    received_at = Column(DateTime, nullable=False, default=utcnow)
    processed_at = Column(DateTime)

    __table_args__ = (
        Index("ix_webhook_events_received_at", "received_at"),
    )


class OrderTransition(Base):
    __tablename__ = "order_transitions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    from_status = Column(String, nullable=False)
    to_status = Column(String, nullable=False)
    event = Column(String, nullable=False)
    cause_id = Column(String, nullable=False)
    actor = Column(String, nullable=False, default="system")
    created_at = Column(DateTime, nullable=False, default=utcnow)

    effects = relationship("OrderEffect", back_populates="transition")

    __table_args__ = (
        UniqueConstraint("order_id", "to_status", "cause_id", name="uq_order_transition_cause"),
    )


class OrderEffect(Base):
    __tablename__ = "order_effects"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transition_id = Column(Integer, ForeignKey("order_transitions.id"), nullable=False)
    order_id = Column(String, nullable=False, index=True)
    kind = Column(String, nullable=False)                  # fulfillment | notify | hook
    detail = Column(String)
    status = Column(String, nullable=False, default="pending")
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    claimed_at = Column(DateTime)
    dispatched_at = Column(DateTime)

    transition = relationship("OrderTransition", back_populates="effects")


class ReconciliationConflict(Base):
    __tablename__ = "reconciliation_conflicts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String, nullable=False)
    provider = Column(String)
    provider_event_id = Column(String)
    order_id = Column(String, index=True)
    intent_id = Column(String)
    detail = Column(Text)
    resolved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    resolved_at = Column(DateTime)


class RateLimitCounter(Base):
    __tablename__ = "rate_limit_counters"

    key = Column(String, primary_key=True)
    count = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime, nullable=False, index=True)
