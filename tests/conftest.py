"""Shared fixtures: in-memory database, scripted provider HTTP and wired services."""

import json
import os
from types import SimpleNamespace
from unittest.mock import AsyncMock

# Settings are read at import time by marketpay.common.*; point them at
# throwaway values before anything imports them.
os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("OTEL_ENABLED", "false")
os.environ.setdefault("REDIS_URL", "redis://localhost:6399/0")

import httpx
import pytest
import stripe

from marketpay.common.config import CommonSettings
from marketpay.common.db import Base, make_engine, make_session_factory
from marketpay.services.payments.models import Order
from marketpay.services.payments.reconciliation import ReconciliationListener
from marketpay.services.payments.service import PaymentOrchestrator
from marketpay.services.payments.store import PaymentStore
from marketpay.services.providers.registry import build_registry

MTN_HOST = "mtn.test"
ORANGE_HOST = "orange.test"
WAVE_HOST = "wave.test"


class ProviderStub:
    """`httpx.MockTransport` handler answering scripted provider routes.

    Routes are keyed by `(method, host, path)`; every request is recorded.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str, str], object] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, host: str, path: str, status_code: int = 200, body=None, exc=None) -> None:
        self.routes[(method.upper(), host, path)] = (status_code, body, exc)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.host, request.url.path)
        if key not in self.routes:
            return httpx.Response(404, json={"code": "NOT_FOUND", "message": f"no route {key}"})
        status_code, body, exc = self.routes[key]
        if exc is not None:
            raise exc(f"scripted failure for {key}", request=request)
        return httpx.Response(status_code, json=body)

    def json_bodies(self) -> list[dict]:
        return [json.loads(request.content) for request in self.requests if request.content]


class StripeStub:
    """Stand-in for `stripe.StripeClient` with the `v1` services the card adapter calls.

    Each service method is an `AsyncMock`; `answer` scripts its result.
    """

    def __init__(self) -> None:
        self.v1 = SimpleNamespace(
            payment_intents=SimpleNamespace(create_async=AsyncMock(), retrieve_async=AsyncMock()),
            refunds=SimpleNamespace(create_async=AsyncMock(), retrieve_async=AsyncMock()),
            balance=SimpleNamespace(retrieve_async=AsyncMock()),
        )

    def answer(self, service: str, method: str, body: dict | None = None, exc: Exception | None = None) -> AsyncMock:
        mock = getattr(getattr(self.v1, service), method)
        if exc is not None:
            mock.side_effect = exc
        else:
            mock.side_effect = None
            mock.return_value = stripe.StripeObject.construct_from(body or {}, "sk_test_123")
        return mock


@pytest.fixture
def test_settings() -> CommonSettings:
    return CommonSettings(
        postgres_dsn="sqlite://",
        api_key="test-api-key",
        otel_enabled=False,
        app_url="https://shop.test",
        frontend_url="https://front.test",
        mtn_money_base_url=f"https://{MTN_HOST}/v1",
        mtn_money_api_key="mtn-key",
        mtn_merchant_code="MTN-MERCHANT",
        mtn_secret_key="mtn-secret",
        mtn_webhook_secret="mtn-whsec",
        orange_money_base_url=f"https://{ORANGE_HOST}/orangemoney",
        orange_money_api_key="orange-key",
        orange_merchant_code="OM-MERCHANT",
        orange_secret_key="orange-secret",
        orange_webhook_secret="orange-whsec",
        wave_base_url=f"https://{WAVE_HOST}/v1",
        wave_api_key="wave-key",
        wave_merchant_code="WAVE-MERCHANT",
        wave_secret_key="wave-secret",
        wave_webhook_secret="wave-whsec",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret="whsec_test",
    )


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory) -> PaymentStore:
    return PaymentStore(session_factory)


@pytest.fixture
def provider_stub() -> ProviderStub:
    return ProviderStub()


@pytest.fixture
def stripe_api() -> StripeStub:
    return StripeStub()


@pytest.fixture
def registry(test_settings, provider_stub, stripe_api):
    return build_registry(test_settings, transport=httpx.MockTransport(provider_stub), stripe_client=stripe_api)


@pytest.fixture
def orchestrator(store, registry, test_settings) -> PaymentOrchestrator:
    return PaymentOrchestrator(store, registry, test_settings)


@pytest.fixture
def listener(orchestrator) -> ReconciliationListener:
    return ReconciliationListener(orchestrator)


@pytest.fixture
def make_order(session_factory):
    def _make(order_id: str = "order-1") -> str:
        with session_factory() as db:
            db.add(Order(id=order_id, payment_status="pending"))
            db.commit()
        return order_id

    return _make


@pytest.fixture
def order_status(session_factory):
    def _status(order_id: str = "order-1") -> str | None:
        with session_factory() as db:
            return db.get(Order, order_id).payment_status

    return _status
