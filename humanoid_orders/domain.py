from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PAID = "PAID"
    PROCESSING = "PROCESSING"
    FULFILLED = "FULFILLED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"


class OrderEvent(str, Enum):
    CHECKOUT_STARTED = "checkout_started"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    CHECKOUT_RETRIED = "checkout_retried"
    CANCEL = "cancel"
    FULFILLMENT_STARTED = "fulfillment_started"
    FULFILLMENT_COMPLETED = "fulfillment_completed"
    REFUND_FULL = "refund_full"
    REFUND_PARTIAL = "refund_partial"


class Provider(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"


class IntentStatus(str, Enum):
    CREATED = "created"
    REQUIRES_ACTION = "requires_action"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


# An order may hold only one intent in one of these at a time.
ACTIVE_INTENT_STATUSES = (IntentStatus.CREATED, IntentStatus.REQUIRES_ACTION)

CAPTURED_INTENT_STATUSES = (
    IntentStatus.SUCCEEDED,
    IntentStatus.PARTIALLY_REFUNDED,
    IntentStatus.REFUNDED,
)


class RefundStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RefundReason(str, Enum):
    REQUESTED_BY_CUSTOMER = "requested_by_customer"
    DUPLICATE = "duplicate"
    FRAUDULENT = "fraudulent"
    OTHER = "other"


class EventType(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    REQUIRES_ACTION = "requires_action"
    REFUND_COMPLETED = "refund_completed"
    DISPUTE_OPENED = "dispute_opened"


class ConflictKind(str, Enum):
    INVALID_TRANSITION = "invalid_transition"
    DUPLICATE_SUCCESS = "duplicate_success"
    ORDER_NOT_FOUND = "order_not_found"
    REFUND_OVERFLOW = "refund_overflow"
    DISPUTE = "dispute"
    UNKNOWN_INTENT = "unknown_intent"


# Provider adapter results. Provider SDK objects never cross the adapter
# boundary; everything past it sees these shapes only.


class IntentResult(BaseModel):
    intent_id: str
    provider: Provider
    status: IntentStatus
    amount: int
    currency: str
    client_token: Optional[str] = None
    reference_id: Optional[str] = None


class RefundResult(BaseModel):
    refund_id: str
    intent_id: str
    amount: int
    currency: str
    status: RefundStatus


class NormalizedEvent(BaseModel):
    provider: Provider
    provider_event_id: str
    type: EventType
    intent_id: Optional[str] = None
    order_hint: Optional[str] = None
    # Secondary provider reference (PayPal capture id) used when the event
    # does not carry the intent id itself.
    reference_id: Optional[str] = None
    refund_id: Optional[str] = None
    amount: Optional[int] = None
    raw_type: Optional[str] = None


# Read models returned by the services


class LineItemIn(BaseModel):
    component_ref: str
    name: Optional[str] = None
    quantity: int
    # Minor units, resolved by the catalog when the cart was finalized.
    unit_price: int


class LineItemView(BaseModel):
    component_ref: str
    name: Optional[str] = None
    quantity: int
    unit_price: int
    subtotal: int


class OrderView(BaseModel):
    id: str
    order_number: str
    status: OrderStatus
    total_amount: int
    currency: str
    customer_ref: str
    items: list[LineItemView] = Field(default_factory=list)
    created_at: datetime
    paid_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    fulfilled_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, order) -> "OrderView":
        return cls(
            id=order.id,
            order_number=order.order_number,
            status=OrderStatus(order.status),
            total_amount=order.total_amount,
            currency=order.currency,
            customer_ref=order.customer_ref,
            items=[
                LineItemView(
                    component_ref=item.component_ref,
                    name=item.name,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    subtotal=item.quantity * item.unit_price,
                )
                for item in order.items
            ],
            created_at=order.created_at,
            paid_at=order.paid_at,
            failed_at=order.failed_at,
            fulfilled_at=order.fulfilled_at,
            cancelled_at=order.cancelled_at,
            refunded_at=order.refunded_at,
        )


class CheckoutResult(BaseModel):
    order_id: str
    provider: Provider
    intent_id: str
    client_continuation_token: Optional[str] = None
    reused: bool = False


class RefundOutcome(BaseModel):
    refund_id: str
    refund_status: RefundStatus
    amount: int
    new_order_status: OrderStatus


class ReconcileOutcome(BaseModel):
    provider_event_id: Optional[str] = None
    outcome: str
    order_id: Optional[str] = None
    order_status: Optional[OrderStatus] = None


class ConflictView(BaseModel):
    id: int
    kind: ConflictKind
    provider: Optional[str] = None
    provider_event_id: Optional[str] = None
    order_id: Optional[str] = None
    intent_id: Optional[str] = None
    detail: Optional[str] = None
    resolved: bool
    created_at: datetime
    resolved_at: Optional[datetime] = None
