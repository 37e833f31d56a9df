"""HTTP surface for payments, refunds, provider webhooks and background workers.

Storefront endpoints require the `X-API-Key` header; webhook endpoints are
authenticated by the provider signature instead. `POST /payments` honours an
optional `Idempotency-Key` header backed by a Redis response cache.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

import redis
from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from marketpay.common.config import settings
from marketpay.common.db import SessionLocal
from marketpay.common.errors import AuthenticationError, InternalError, PaymentError
from marketpay.common.logging import configure_logging, logger, trace_id_ctx
from marketpay.common.metrics import (
    http_request_duration_seconds,
    http_requests_total,
    metrics_response,
    payment_latency_seconds,
    payment_requests_total,
)
from marketpay.common.outbox import OutboxPublisher
from marketpay.common.startup import log_startup_config
from marketpay.common.tracing import instrument_app, setup_tracing
from marketpay.services.payments.models import OutboxEvent
from marketpay.services.payments.reconciliation import PaymentReconciler, ReconciliationListener
from marketpay.services.payments.schemas import (
    PaymentMethodsResponse,
    PaymentRequest,
    PaymentResult,
    PaymentStatusResponse,
    RefundRequest,
    RefundResult,
    WebhookAck,
)
from marketpay.services.payments.service import PaymentOrchestrator
from marketpay.services.payments.store import PaymentStore
from marketpay.services.providers.registry import build_registry, parse_method

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "postgres_dsn",
        "redis_url",
        "kafka_bootstrap_servers",
        "app_url",
        "mtn_money_base_url",
        "orange_money_base_url",
        "wave_base_url",
        "stripe_secret_key",
        "provider_timeout_seconds",
        "reconcile_interval_seconds",
    ],
)
store = PaymentStore(SessionLocal)
orchestrator = PaymentOrchestrator(store, build_registry(settings), settings)
listener = ReconciliationListener(orchestrator)
reconciler = PaymentReconciler(
    orchestrator,
    interval_seconds=settings.reconcile_interval_seconds,
    older_than_seconds=settings.reconcile_after_seconds,
)
publisher = OutboxPublisher(SessionLocal, OutboxEvent, settings.service_name)
rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher and the polling reconciler with the app lifecycle."""

    publisher_task = asyncio.create_task(publisher.run_forever())
    reconciler_task = asyncio.create_task(reconciler.run_forever())
    yield
    publisher_task.cancel()
    reconciler_task.cancel()
    await publisher.close()


app = FastAPI(title="Marketpay Payments", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


@app.exception_handler(PaymentError)
async def payment_error_handler(_: Request, exc: PaymentError):
    """Render every domain error as `{success: false, message, code}`."""

    if isinstance(exc, InternalError):
        logger.error("internal_error detail=%s", exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message, "code": exc.code},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(_: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg', 'invalid value')}" if field else "Invalid request"
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": message, "code": "VALIDATION_ERROR"},
    )


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise AuthenticationError("Invalid API key")


def _bind_trace(x_correlation_id: str | None) -> str:
    trace_id = x_correlation_id or str(uuid4())
    trace_id_ctx.set(trace_id)
    return trace_id


def _idempotency_cache_key(order_id: str, idempotency_key: str) -> str:
    # Scoped by order so that two orders cannot collide on a client-chosen key.
    return f"idempotency:payment:{order_id}:{idempotency_key}"


@app.post("/payments", response_model=PaymentResult)
async def create_payment(
    req: PaymentRequest,
    x_api_key: str | None = Header(default=None),
    x_correlation_id: str | None = Header(default=None),
    idempotency_key: str | None = Header(default=None),
):
    """Create a payment and charge it through the selected provider.

    Returns the cached response when the same order/idempotency key was
    already processed.
    """

    enforce_api_key(x_api_key)
    trace_id = _bind_trace(x_correlation_id)

    cache_key = _idempotency_cache_key(req.order_id, idempotency_key) if idempotency_key else None
    if cache_key:
        try:
            cached = rdb.get(cache_key)
            if cached:
                return json.loads(cached)
        except Exception as exc:
            logger.warning("idempotency_cache_read_failed error=%s", exc)

    method = parse_method(req.payment_method)
    payment_requests_total.labels(
        service=settings.service_name, method=method.value if method else "unknown"
    ).inc()
    with payment_latency_seconds.labels(service=settings.service_name).time():
        result = await orchestrator.process_payment(req, trace_id)
    payload = result.model_dump()
    if cache_key:
        try:
            rdb.setex(cache_key, settings.idempotency_ttl_seconds, json.dumps(payload))
        except Exception as exc:
            logger.warning("idempotency_cache_write_failed error=%s", exc)
    return payload


@app.get("/payments/methods", response_model=PaymentMethodsResponse)
def payment_methods(
    country: str = "CI",
    amount: int = 0,
    currency: str = "XOF",
    x_api_key: str | None = Header(default=None),
):
    """Methods the storefront may offer for this country, amount and currency."""

    enforce_api_key(x_api_key)
    return orchestrator.available_methods(country, amount, currency)


@app.get("/payments/{payment_id}/status", response_model=PaymentStatusResponse)
async def payment_status(
    payment_id: str,
    x_api_key: str | None = Header(default=None),
    x_correlation_id: str | None = Header(default=None),
):
    enforce_api_key(x_api_key)
    trace_id = _bind_trace(x_correlation_id)
    payment = await orchestrator.check_payment_status(payment_id, trace_id)
    return PaymentStatusResponse(
        payment_id=payment.id,
        order_id=payment.order_id,
        status=payment.status,
        payment_method=payment.payment_method,
        amount=payment.amount,
        currency=payment.currency,
        processor_reference=payment.processor_reference,
        refund_status=payment.refund_status,
        total_refunded=payment.total_refunded,
        error_message=payment.error_message,
    )


@app.post("/payments/{payment_id}/refund", response_model=RefundResult)
async def refund_payment(
    payment_id: str,
    req: RefundRequest,
    x_api_key: str | None = Header(default=None),
    x_correlation_id: str | None = Header(default=None),
):
    enforce_api_key(x_api_key)
    trace_id = _bind_trace(x_correlation_id)
    return await orchestrator.process_refund(payment_id, req.amount, req.reason, trace_id)


@app.post("/webhooks/payments/{provider}", response_model=WebhookAck)
async def provider_webhook(provider: str, request: Request):
    """Provider callback; authenticated by the provider's signature header."""

    trace_id = _bind_trace(request.headers.get("x-correlation-id"))
    body = await request.body()
    return await listener.handle_webhook(provider, body, request.headers, trace_id)


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health check endpoint."""

    return {"ok": True}


@app.get("/health/providers")
async def provider_health():
    """Reachability of every configured provider."""

    providers = await orchestrator.provider_health()
    return {"ok": all(item["healthy"] for item in providers), "providers": providers}
