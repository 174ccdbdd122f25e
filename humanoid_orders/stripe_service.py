from typing import Mapping, Optional

import stripe
import structlog

from humanoid_orders.config import settings
from humanoid_orders.domain import (
    EventType,
    IntentResult,
    IntentStatus,
    NormalizedEvent,
    Provider,
    RefundReason,
    RefundResult,
    RefundStatus,
)
from humanoid_orders.errors import (
    AlreadyRefunded,
    AmountExceedsCaptured,
    InvalidRequest,
    InvalidSignature,
    ProviderUnavailable,
)
from humanoid_orders.providers import PaymentProvider

logger = structlog.get_logger(component="stripe")

stripe.api_key = settings.STRIPE_SECRET_KEY
stripe.max_network_retries = 2
stripe.default_http_client = stripe.RequestsClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS)

_INTENT_STATUS = {
    "requires_payment_method": IntentStatus.CREATED,
    "requires_confirmation": IntentStatus.CREATED,
    "processing": IntentStatus.CREATED,
    "requires_action": IntentStatus.REQUIRES_ACTION,
    "requires_capture": IntentStatus.REQUIRES_ACTION,
    "succeeded": IntentStatus.SUCCEEDED,
    "canceled": IntentStatus.FAILED,
}

_REFUND_STATUS = {
    "pending": RefundStatus.PENDING,
    "requires_action": RefundStatus.PENDING,
    "succeeded": RefundStatus.SUCCEEDED,
    "failed": RefundStatus.FAILED,
    "canceled": RefundStatus.FAILED,
}

_INTENT_EVENTS = {
    "payment_intent.succeeded": EventType.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": EventType.PAYMENT_FAILED,
    "payment_intent.requires_action": EventType.REQUIRES_ACTION,
}

_REFUND_EVENTS = ("refund.created", "refund.updated")

# Reasons Stripe accepts natively; anything else goes to metadata only.
_STRIPE_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}


def _translate(exc: stripe.StripeError, **context):
    code = getattr(exc, "code", None)
    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
        return ProviderUnavailable(str(exc), provider="stripe", **context)
    if code == "charge_already_refunded":
        return AlreadyRefunded(str(exc), **context)
    if code == "amount_too_large":
        return AmountExceedsCaptured(str(exc), **context)
    status = getattr(exc, "http_status", None)
    if isinstance(exc, stripe.APIError) or (status is not None and status >= 500):
        return ProviderUnavailable(str(exc), provider="stripe", **context)
    return InvalidRequest(str(exc), provider="stripe", **context)


class StripeProvider(PaymentProvider):
    name = Provider.STRIPE

    def __init__(self, webhook_secret=None):
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

    def _result(self, intent, amount: int = None, currency: str = None) -> IntentResult:
        return IntentResult(
            intent_id=intent.id,
            provider=self.name,
            status=_INTENT_STATUS.get(intent.status, IntentStatus.CREATED),
            amount=amount if amount is not None else intent.amount,
            currency=(currency or intent.currency).upper(),
            client_token=intent.client_secret,
        )

    def create_intent(self, order_id, amount, currency, customer, idempotency_key):
        currency = self.validate(amount, currency)
        metadata = {"order_id": order_id}
        if customer:
            metadata["customer_ref"] = customer
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=currency.lower(),
                automatic_payment_methods={"enabled": True},
                metadata=metadata,
                description=f"DIY Humanoid Order {order_id}",
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            raise _translate(exc, order_id=order_id)

        logger.info("intent_created", order_id=order_id, intent_id=intent.id)
        return self._result(intent, amount=amount, currency=currency)

    def fetch_status(self, intent_id):
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id)
        except stripe.StripeError as exc:
            raise _translate(exc, intent_id=intent_id)
        return self._result(intent)

    def confirm_or_capture(self, intent_id):
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id)
            if intent.status == "requires_confirmation":
                intent = stripe.PaymentIntent.confirm(
                    intent_id, idempotency_key=f"confirm-{intent_id}"
                )
            elif intent.status == "requires_capture":
                intent = stripe.PaymentIntent.capture(
                    intent_id, idempotency_key=f"capture-{intent_id}"
                )
        except stripe.StripeError as exc:
            raise _translate(exc, intent_id=intent_id)
        return self._result(intent)

    def refund(self, intent_id, amount, reason, idempotency_key, capture_id=None, currency=None):
        reason = RefundReason(reason)
        params = {
            "payment_intent": intent_id,
            "metadata": {"reason": reason.value},
            "idempotency_key": idempotency_key,
        }
        if amount is not None:
            params["amount"] = amount
        if reason.value in _STRIPE_REASONS:
            params["reason"] = reason.value
        try:
            refund = stripe.Refund.create(**params)
        except stripe.StripeError as exc:
            raise _translate(exc, intent_id=intent_id)

        logger.info("refund_created", intent_id=intent_id, refund_id=refund.id, status=refund.status)
        return RefundResult(
            refund_id=refund.id,
            intent_id=intent_id,
            amount=refund.amount,
            currency=refund.currency.upper(),
            status=_REFUND_STATUS.get(refund.status, RefundStatus.PENDING),
        )

    def cancel(self, intent_id):
        try:
            stripe.PaymentIntent.cancel(intent_id)
        except stripe.StripeError as exc:
            raise _translate(exc, intent_id=intent_id)

    def parse_webhook(self, raw_payload, headers: Mapping[str, str], shared_secret) -> Optional[NormalizedEvent]:
        signature = {k.lower(): v for k, v in headers.items()}.get("stripe-signature")
        if not signature or not shared_secret:
            raise InvalidSignature("Missing Stripe signature or secret")
        try:
            event = stripe.Webhook.construct_event(raw_payload, signature, shared_secret)
        except (ValueError, stripe.SignatureVerificationError):
            raise InvalidSignature("Invalid signature")

        event_type = event["type"]
        obj = event["data"]["object"]

        if event_type in _INTENT_EVENTS:
            metadata = obj.get("metadata") or {}
            return NormalizedEvent(
                provider=self.name,
                provider_event_id=event["id"],
                type=_INTENT_EVENTS[event_type],
                intent_id=obj["id"],
                order_hint=metadata.get("order_id"),
                amount=obj.get("amount_received") or obj.get("amount"),
                raw_type=event_type,
            )

        if event_type in _REFUND_EVENTS:
            if obj.get("status") != "succeeded":
                return None
            return NormalizedEvent(
                provider=self.name,
                provider_event_id=event["id"],
                type=EventType.REFUND_COMPLETED,
                intent_id=obj.get("payment_intent"),
                refund_id=obj["id"],
                amount=obj.get("amount"),
                raw_type=event_type,
            )

        if event_type == "charge.dispute.created":
            return NormalizedEvent(
                provider=self.name,
                provider_event_id=event["id"],
                type=EventType.DISPUTE_OPENED,
                intent_id=obj.get("payment_intent"),
                amount=obj.get("amount"),
                raw_type=event_type,
            )

        logger.info("webhook_event_ignored", event_type=event_type)
        return None
