"""Uniform payment provider contract.

Each backend (Stripe as the card/bank-debit processor, PayPal as the
wallet processor) implements ``PaymentProvider``. Errors leave an adapter
only as ``humanoid_orders.errors`` types and results only as the models in
``humanoid_orders.domain``.
"""
from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_HALF_UP
from typing import Mapping, Optional

from humanoid_orders.config import settings
from humanoid_orders.domain import (
    IntentResult,
    NormalizedEvent,
    Provider,
    RefundReason,
    RefundResult,
)
from humanoid_orders.errors import InvalidRequest

# All supported currencies use two decimals.
MINOR_UNITS = Decimal("100")


def to_decimal_string(amount: int) -> str:
    return str((Decimal(amount) / MINOR_UNITS).quantize(Decimal("0.01")))


def to_minor_units(value: str) -> int:
    return int((Decimal(value) * MINOR_UNITS).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentProvider(ABC):
    name: Provider
    supported_currencies = settings.SUPPORTED_CURRENCIES
    webhook_secret: Optional[str] = None

    def validate(self, amount: int, currency: str) -> str:
        if not isinstance(amount, int) or amount <= 0:
            raise InvalidRequest("Amount must be a positive integer in minor units", amount=amount)
        currency = (currency or "").upper()
        if currency not in self.supported_currencies:
            raise InvalidRequest(f"Unsupported currency: {currency}", currency=currency)
        return currency

    @abstractmethod
    def create_intent(
        self,
        order_id: str,
        amount: int,
        currency: str,
        customer: Optional[str],
        idempotency_key: str,
    ) -> IntentResult:
        pass

    @abstractmethod
    def confirm_or_capture(self, intent_id: str) -> IntentResult:
        pass

    @abstractmethod
    def fetch_status(self, intent_id: str) -> IntentResult:
        pass

    @abstractmethod
    def refund(
        self,
        intent_id: str,
        amount: Optional[int],
        reason: RefundReason,
        idempotency_key: str,
        capture_id: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> RefundResult:
        pass

    @abstractmethod
    def cancel(self, intent_id: str) -> None:
        pass

    @abstractmethod
    def parse_webhook(
        self, raw_payload: bytes, headers: Mapping[str, str], shared_secret: str
    ) -> Optional[NormalizedEvent]:
        """Verify and normalize a webhook delivery.

        Raises ``InvalidSignature`` before the payload is used for anything.
        Returns ``None`` for verified events this engine does not act on.
        """


class ProviderRegistry:
    def __init__(self, providers):
        self._providers = {p.name: p for p in providers}

    def get(self, provider) -> PaymentProvider:
        try:
            key = Provider(provider)
            return self._providers[key]
        except (KeyError, ValueError):
            key = getattr(provider, "value", provider)
            raise InvalidRequest(f"Payment provider not enabled: {key}", provider=key)

    def enabled(self):
        return list(self._providers)


def build_registry() -> ProviderRegistry:
    from humanoid_orders.paypal_service import PayPalProvider
    from humanoid_orders.stripe_service import StripeProvider

    providers = []
    if settings.stripe_enabled:
        providers.append(StripeProvider())
    if settings.paypal_enabled:
        providers.append(PayPalProvider())
    return ProviderRegistry(providers)
