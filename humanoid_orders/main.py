from fastapi import Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
import structlog

from humanoid_orders.config import settings
from humanoid_orders.database import Base, engine
from humanoid_orders.domain import Provider
from humanoid_orders.errors import PaymentEngineError, RateLimited
from humanoid_orders.logs import configure_logging
from humanoid_orders import models  # noqa: F401  registers the tables
from humanoid_orders.routes import router, webhook_rate_limit
from humanoid_orders.services import Services, get_services

configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
logger = structlog.get_logger(component="api")

app = FastAPI(title="Humanoid Orders Payment Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(PaymentEngineError)
async def payment_engine_error(request: Request, exc: PaymentEngineError):
    # Validation messages help the caller fix the request; conflicts and
    # provider failures only ever get the generic text.
    detail = str(exc) if exc.status_code in (400, 422) else exc.public_message
    if exc.status_code >= 500:
        logger.warning("request_failed", path=request.url.path, code=exc.code, error=str(exc))
    headers = None
    if isinstance(exc, RateLimited) and exc.context.get("retry_after"):
        headers = {"Retry-After": str(exc.context["retry_after"])}
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": detail, "code": exc.code},
        headers=headers,
    )


async def _receive(provider: Provider, request: Request, services: Services):
    payload = await request.body()
    outcome = await run_in_threadpool(
        services.reconciler.handle, provider, payload, dict(request.headers)
    )
    return {"ok": True, "outcome": outcome.outcome}


@app.post("/webhooks/stripe", dependencies=[Depends(webhook_rate_limit)])
async def stripe_webhook(request: Request, services: Services = Depends(get_services)):
    return await _receive(Provider.STRIPE, request, services)


@app.post("/webhooks/paypal", dependencies=[Depends(webhook_rate_limit)])
async def paypal_webhook(request: Request, services: Services = Depends(get_services)):
    return await _receive(Provider.PAYPAL, request, services)
