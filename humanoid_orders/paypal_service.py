import json
import time
from typing import Mapping, Optional

import httpx
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
from humanoid_orders.providers import PaymentProvider, to_decimal_string, to_minor_units

logger = structlog.get_logger(component="paypal")

_ORDER_STATUS = {
    "CREATED": IntentStatus.CREATED,
    "SAVED": IntentStatus.CREATED,
    "APPROVED": IntentStatus.REQUIRES_ACTION,
    "PAYER_ACTION_REQUIRED": IntentStatus.REQUIRES_ACTION,
    "VOIDED": IntentStatus.FAILED,
}

_CAPTURE_STATUS = {
    "COMPLETED": IntentStatus.SUCCEEDED,
    "PENDING": IntentStatus.CREATED,
    "DECLINED": IntentStatus.FAILED,
    "FAILED": IntentStatus.FAILED,
    "REFUNDED": IntentStatus.REFUNDED,
    "PARTIALLY_REFUNDED": IntentStatus.PARTIALLY_REFUNDED,
}

_REFUND_STATUS = {
    "COMPLETED": RefundStatus.SUCCEEDED,
    "PENDING": RefundStatus.PENDING,
    "CANCELLED": RefundStatus.FAILED,
    "FAILED": RefundStatus.FAILED,
}

_SIGNATURE_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}

_CAPTURE_EVENTS = {
    "PAYMENT.CAPTURE.COMPLETED": EventType.PAYMENT_SUCCEEDED,
    "PAYMENT.CAPTURE.DENIED": EventType.PAYMENT_FAILED,
    "PAYMENT.CAPTURE.DECLINED": EventType.PAYMENT_FAILED,
}


def _issues(response: httpx.Response) -> set:
    try:
        body = response.json()
    except ValueError:
        return set()
    return {d.get("issue") for d in body.get("details") or [] if d.get("issue")}


def _link(resource: dict, rel: str) -> Optional[str]:
    for link in resource.get("links") or []:
        if link.get("rel") == rel:
            return link.get("href")
    return None


class PayPalProvider(PaymentProvider):
    name = Provider.PAYPAL

    def __init__(self, client_id=None, client_secret=None, base_url=None, http_client=None, webhook_id=None):
        self.webhook_secret = webhook_id or settings.PAYPAL_WEBHOOK_ID
        self._client_id = client_id or settings.PAYPAL_CLIENT_ID
        self._client_secret = client_secret or settings.PAYPAL_CLIENT_SECRET
        self._http = http_client or httpx.Client(
            base_url=base_url or settings.paypal_base_url,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )
        self._token = None
        self._token_expires_at = 0.0

    # HTTP plumbing

    def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        try:
            resp = self._http.post(
                "/v1/oauth2/token",
                auth=(self._client_id, self._client_secret),
                data={"grant_type": "client_credentials"},
            )
        except httpx.TransportError as exc:
            raise ProviderUnavailable(str(exc), provider="paypal")
        if resp.status_code != 200:
            raise ProviderUnavailable("PayPal authentication failed", provider="paypal", status=resp.status_code)
        body = resp.json()
        self._token = body["access_token"]
        self._token_expires_at = time.monotonic() + int(body.get("expires_in", 300)) - 60
        return self._token

    def _request(self, method: str, path: str, body: dict = None, request_id: str = None) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Prefer": "return=representation",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        try:
            resp = self._http.request(method, path, json=body, headers=headers)
        except httpx.TransportError as exc:
            # Timeouts land here too.
            raise ProviderUnavailable(str(exc), provider="paypal", path=path)

        if resp.status_code == 401:
            self._token = None
            raise ProviderUnavailable("PayPal token rejected", provider="paypal")
        if resp.status_code == 429 or resp.status_code >= 500:
            raise ProviderUnavailable(
                f"PayPal returned {resp.status_code}", provider="paypal", path=path
            )
        return resp

    # Results

    def _order_result(self, order: dict) -> IntentResult:
        unit = (order.get("purchase_units") or [{}])[0]
        amount = unit.get("amount") or {}
        captures = (unit.get("payments") or {}).get("captures") or []
        capture = captures[0] if captures else None

        if capture is not None:
            status = _CAPTURE_STATUS.get(capture.get("status"), IntentStatus.CREATED)
            if not amount:
                amount = capture.get("amount") or {}
        else:
            status = _ORDER_STATUS.get(order.get("status"), IntentStatus.CREATED)

        return IntentResult(
            intent_id=order["id"],
            provider=self.name,
            status=status,
            amount=to_minor_units(amount.get("value", "0")),
            currency=amount.get("currency_code", "").upper(),
            client_token=_link(order, "approve") or _link(order, "payer-action"),
            reference_id=capture.get("id") if capture else None,
        )

    # Contract

    def create_intent(self, order_id, amount, currency, customer, idempotency_key):
        currency = self.validate(amount, currency)
        body = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": order_id,
                "custom_id": order_id,
                "description": f"DIY Humanoid Order {order_id}",
                "amount": {"currency_code": currency, "value": to_decimal_string(amount)},
            }],
            "application_context": {
                "brand_name": "DIY Humanoid Configurator",
                "shipping_preference": "NO_SHIPPING",
                "user_action": "PAY_NOW",
                "return_url": f"{settings.FRONTEND_URL}/payment/success",
                "cancel_url": f"{settings.FRONTEND_URL}/payment/cancel",
            },
        }
        resp = self._request("POST", "/v2/checkout/orders", body, request_id=idempotency_key)
        if resp.status_code not in (200, 201):
            raise InvalidRequest(
                f"PayPal rejected order creation ({resp.status_code})",
                provider="paypal",
                issues=sorted(_issues(resp)),
            )
        result = self._order_result(resp.json()).model_copy(update={"amount": amount, "currency": currency})
        logger.info("intent_created", order_id=order_id, intent_id=result.intent_id)
        return result

    def fetch_status(self, intent_id):
        resp = self._request("GET", f"/v2/checkout/orders/{intent_id}")
        if resp.status_code != 200:
            raise InvalidRequest(f"PayPal order lookup failed ({resp.status_code})", intent_id=intent_id)
        return self._order_result(resp.json())

    def confirm_or_capture(self, intent_id):
        current = self.fetch_status(intent_id)
        if current.status != IntentStatus.REQUIRES_ACTION:
            return current
        resp = self._request(
            "POST", f"/v2/checkout/orders/{intent_id}/capture", {}, request_id=f"capture-{intent_id}"
        )
        if resp.status_code in (200, 201):
            return self._order_result(resp.json())
        issues = _issues(resp)
        if "ORDER_ALREADY_CAPTURED" in issues:
            return self.fetch_status(intent_id)
        if "ORDER_NOT_APPROVED" in issues or "PAYER_ACTION_REQUIRED" in issues:
            return current
        raise InvalidRequest(
            f"PayPal capture failed ({resp.status_code})", intent_id=intent_id, issues=sorted(issues)
        )

    def refund(self, intent_id, amount, reason, idempotency_key, capture_id=None, currency=None):
        reason = RefundReason(reason)
        if not capture_id:
            capture_id = self.fetch_status(intent_id).reference_id
        if not capture_id:
            raise InvalidRequest("PayPal order has no capture to refund", intent_id=intent_id)

        body = {"note_to_payer": reason.value.replace("_", " ")}
        if amount is not None:
            if not currency:
                raise InvalidRequest("Currency is required for partial PayPal refunds")
            body["amount"] = {"value": to_decimal_string(amount), "currency_code": currency.upper()}

        resp = self._request(
            "POST", f"/v2/payments/captures/{capture_id}/refund", body, request_id=idempotency_key
        )
        if resp.status_code not in (200, 201):
            issues = _issues(resp)
            if "CAPTURE_FULLY_REFUNDED" in issues:
                raise AlreadyRefunded(intent_id=intent_id)
            if "REFUND_AMOUNT_EXCEEDED" in issues or "REFUND_EXCEEDED_TRANSACTION_AMOUNT" in issues:
                raise AmountExceedsCaptured(intent_id=intent_id)
            raise InvalidRequest(
                f"PayPal refund failed ({resp.status_code})", intent_id=intent_id, issues=sorted(issues)
            )

        refund = resp.json()
        refunded = refund.get("amount") or {}
        logger.info("refund_created", intent_id=intent_id, refund_id=refund["id"], status=refund.get("status"))
        return RefundResult(
            refund_id=refund["id"],
            intent_id=intent_id,
            amount=to_minor_units(refunded["value"]) if refunded else amount,
            currency=(refunded.get("currency_code") or currency or "").upper(),
            status=_REFUND_STATUS.get(refund.get("status"), RefundStatus.PENDING),
        )

    def cancel(self, intent_id):
        # Uncaptured PayPal orders cannot be voided through the API; they expire.
        logger.info("intent_release_skipped", intent_id=intent_id, provider="paypal")

    def verify_signature(self, event: dict, headers: Mapping[str, str], webhook_id: str) -> None:
        body = {field: headers.get(header) for field, header in _SIGNATURE_HEADERS.items()}
        if not all(body.values()) or not webhook_id:
            raise InvalidSignature("Missing PayPal transmission headers")
        body["webhook_id"] = webhook_id
        body["webhook_event"] = event

        resp = self._request("POST", "/v1/notifications/verify-webhook-signature", body)
        if resp.status_code != 200:
            raise InvalidSignature("PayPal signature verification rejected")
        if resp.json().get("verification_status") != "SUCCESS":
            raise InvalidSignature("Invalid signature")

    def parse_webhook(self, raw_payload, headers, shared_secret):
        headers = {k.lower(): v for k, v in headers.items()}
        try:
            event = json.loads(raw_payload)
        except ValueError:
            raise InvalidSignature("Unparseable PayPal payload")
        if not isinstance(event, dict):
            raise InvalidSignature("Unparseable PayPal payload")

        self.verify_signature(event, headers, shared_secret)

        event_type = event.get("event_type")
        resource = event.get("resource") or {}

        if event_type == "CHECKOUT.ORDER.APPROVED":
            unit = (resource.get("purchase_units") or [{}])[0]
            return NormalizedEvent(
                provider=self.name,
                provider_event_id=event["id"],
                type=EventType.REQUIRES_ACTION,
                intent_id=resource.get("id"),
                order_hint=unit.get("custom_id"),
                raw_type=event_type,
            )

        if event_type in _CAPTURE_EVENTS:
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            amount = resource.get("amount") or {}
            return NormalizedEvent(
                provider=self.name,
                provider_event_id=event["id"],
                type=_CAPTURE_EVENTS[event_type],
                intent_id=related.get("order_id"),
                order_hint=resource.get("custom_id"),
                reference_id=resource.get("id"),
                amount=to_minor_units(amount["value"]) if amount.get("value") else None,
                raw_type=event_type,
            )

        if event_type == "PAYMENT.CAPTURE.REFUNDED":
            if resource.get("status") not in (None, "COMPLETED"):
                return None
            up = _link(resource, "up") or ""
            amount = resource.get("amount") or {}
            return NormalizedEvent(
                provider=self.name,
                provider_event_id=event["id"],
                type=EventType.REFUND_COMPLETED,
                order_hint=resource.get("custom_id"),
                reference_id=up.rstrip("/").rsplit("/", 1)[-1] or None,
                refund_id=resource.get("id"),
                amount=to_minor_units(amount["value"]) if amount.get("value") else None,
                raw_type=event_type,
            )

        if event_type == "CUSTOMER.DISPUTE.CREATED":
            transactions = resource.get("disputed_transactions") or [{}]
            amount = resource.get("dispute_amount") or {}
            return NormalizedEvent(
                provider=self.name,
                provider_event_id=event["id"],
                type=EventType.DISPUTE_OPENED,
                reference_id=transactions[0].get("seller_transaction_id"),
                amount=to_minor_units(amount["value"]) if amount.get("value") else None,
                raw_type=event_type,
            )

        logger.info("webhook_event_ignored", event_type=event_type)
        return None
