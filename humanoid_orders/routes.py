from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from humanoid_orders.auth import require_admin, verify_token
from humanoid_orders.config import settings
from humanoid_orders.domain import LineItemIn, Provider, RefundReason
from humanoid_orders.services import Services, get_services

router = APIRouter()


def client_identity(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def checkout_rate_limit(request: Request, services: Services = Depends(get_services)):
    services.checkout_limiter.hit(client_identity(request))


def webhook_rate_limit(request: Request, services: Services = Depends(get_services)):
    services.webhook_limiter.hit(client_identity(request))


class CreateOrderRequest(BaseModel):
    customer_ref: str
    currency: str = settings.DEFAULT_CURRENCY
    items: list[LineItemIn] = Field(default_factory=list)


class CheckoutRequest(BaseModel):
    provider: Provider = Provider.STRIPE


class ConfirmRequest(BaseModel):
    intent_id: str


class RefundRequest(BaseModel):
    amount: Optional[int] = None
    reason: RefundReason = RefundReason.REQUESTED_BY_CUSTOMER


# Orders


@router.post("/orders", status_code=201)
def create_order(
    request: CreateOrderRequest,
    auth=Depends(verify_token),
    services: Services = Depends(get_services),
):
    return services.orders.create_order(request.customer_ref, request.currency, request.items)


@router.get("/orders/number/{order_number}")
def get_order_by_number(order_number: str, auth=Depends(verify_token), services: Services = Depends(get_services)):
    return services.orders.get_order_by_number(order_number)


@router.get("/orders/{order_id}")
def get_order(order_id: str, auth=Depends(verify_token), services: Services = Depends(get_services)):
    return services.orders.get_order(order_id)


@router.post("/orders/{order_id}/checkout", dependencies=[Depends(checkout_rate_limit)])
def start_checkout(
    order_id: str,
    request: CheckoutRequest = CheckoutRequest(),
    auth=Depends(verify_token),
    services: Services = Depends(get_services),
):
    return services.orders.start_checkout(order_id, request.provider)


@router.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, auth=Depends(verify_token), services: Services = Depends(get_services)):
    actor = "admin" if isinstance(auth, dict) and auth.get("role") == "admin" else "customer"
    return services.orders.cancel_order(order_id, actor=actor)


@router.post("/orders/{order_id}/refund")
def refund_order(
    order_id: str,
    request: RefundRequest = RefundRequest(),
    admin=Depends(require_admin),
    services: Services = Depends(get_services),
):
    return services.orders.request_refund(order_id, request.amount, request.reason)


@router.post("/orders/{order_id}/fulfillment/start")
def begin_fulfillment(order_id: str, admin=Depends(require_admin), services: Services = Depends(get_services)):
    return services.orders.begin_fulfillment(order_id)


@router.post("/orders/{order_id}/fulfillment/complete")
def complete_fulfillment(order_id: str, admin=Depends(require_admin), services: Services = Depends(get_services)):
    return services.orders.complete_fulfillment(order_id)


# Payments


@router.post("/payments/confirm")
def confirm_payment(
    request: ConfirmRequest,
    auth=Depends(verify_token),
    services: Services = Depends(get_services),
):
    result = services.orders.confirm_payment(request.intent_id)
    return {"intent_id": result.intent_id, "provider": result.provider, "status": result.status}


@router.get("/payments/methods")
def payment_methods(currency: str = settings.DEFAULT_CURRENCY, services: Services = Depends(get_services)):
    return {"currency": currency.upper(), "methods": services.orders.available_payment_methods(currency)}


@router.get("/payments/config")
def payment_config(services: Services = Depends(get_services)):
    enabled = services.providers.enabled()
    return {
        "stripe": {
            "enabled": Provider.STRIPE in enabled,
            "publishable_key": settings.STRIPE_PUBLISHABLE_KEY if Provider.STRIPE in enabled else None,
        },
        "paypal": {
            "enabled": Provider.PAYPAL in enabled,
            "client_id": settings.PAYPAL_CLIENT_ID if Provider.PAYPAL in enabled else None,
            "environment": settings.PAYPAL_ENVIRONMENT,
        },
        "currencies": list(settings.SUPPORTED_CURRENCIES),
        "default_currency": settings.DEFAULT_CURRENCY,
    }


@router.get("/payments/health")
def payment_health(services: Services = Depends(get_services)):
    providers = services.orders.provider_status()
    healthy = any(p["enabled"] for p in providers.values())
    return {"status": "healthy" if healthy else "degraded", "providers": providers}


# Reconciliation


@router.get("/admin/conflicts")
def list_conflicts(
    include_resolved: bool = False,
    admin=Depends(require_admin),
    services: Services = Depends(get_services),
):
    return services.reconciler.list_conflicts(include_resolved=include_resolved)


@router.post("/admin/conflicts/{conflict_id}/resolve")
def resolve_conflict(conflict_id: int, admin=Depends(require_admin), services: Services = Depends(get_services)):
    return services.reconciler.resolve_conflict(conflict_id)


# Maintenance


@router.post("/admin/maintenance")
def run_maintenance(admin=Depends(require_admin), services: Services = Depends(get_services)):
    return services.run_maintenance()
