"""Provider adapter contract shared by the four payment providers.

An adapter turns a canonical payment instruction into one provider HTTP call
and the provider's answer back into a canonical result. Adapters hold
configuration only; every call opens its own `httpx.AsyncClient`.
"""

import hashlib
import hmac
import time
from collections.abc import Mapping
from typing import Any

import httpx
from pydantic import BaseModel, Field

from marketpay.common.errors import (
    ProviderError,
    ProviderUnavailableError,
    ValidationError,
    provider_error,
)
from marketpay.common.logging import logger
from marketpay.common.metrics import provider_latency_seconds, provider_requests_total
from marketpay.common.tracing import provider_span

# Minor-unit exponent per currency; anything not listed has two decimals.
CURRENCY_EXPONENTS = {"XOF": 0, "XAF": 0, "GNF": 0, "JPY": 0}


def currency_exponent(currency: str) -> int:
    return CURRENCY_EXPONENTS.get(currency.upper(), 2)


class ProviderConfig(BaseModel):
    """Credentials and endpoint for one provider."""

    base_url: str
    api_key: str = ""
    merchant_code: str = ""
    secret_key: str = ""
    webhook_secret: str = ""
    timeout_seconds: float = 30.0
    default_country_code: str = "225"
    api_version: str = ""


class PaymentInstruction(BaseModel):
    """What the orchestrator asks an adapter to charge.

    `amount` is in the currency's smallest unit; `recipient` is a phone
    number for mobile money and a payment-method token for cards.
    """

    amount: int
    currency: str
    recipient: str
    order_id: str
    callback_url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ProviderPaymentResult(BaseModel):
    success: bool
    provider_status: str
    provider_reference: str | None = None
    raw_response: dict[str, Any] = Field(default_factory=dict)
    verification_required: bool = False
    next_action: dict[str, Any] | None = None
    message: str = ""


class ProviderStatusResult(BaseModel):
    provider_status: str
    raw_response: dict[str, Any] = Field(default_factory=dict)


class ProviderRefundResult(BaseModel):
    success: bool
    provider_status: str
    provider_reference: str | None = None
    raw_response: dict[str, Any] = Field(default_factory=dict)


class WebhookEvent(BaseModel):
    """Payment-relevant fields pulled out of a provider webhook."""

    payment_id: str | None
    provider_status: str
    provider_reference: str | None = None
    event_id: str | None = None


class ProviderAdapter:
    """Base class; subclasses fill in wire formats and error maps."""

    name = "provider"
    # provider error code -> (user-facing message, http status hint)
    error_map: dict[str, tuple[str, int]] = {}
    # provider status string -> canonical status vocabulary
    status_aliases: dict[str, str] = {}
    default_error_message = "Payment provider error"
    supports_partial_refund = True
    signature_header = "x-signature"
    health_path = "/health"

    def __init__(self, config: ProviderConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.config = config
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "Accept": "application/json"}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.base_url,
            headers=self._headers(),
            timeout=self.config.timeout_seconds,
            transport=self._transport,
        )

    async def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """Send one provider request and return the decoded JSON body.

        Transport failures and non-2xx answers are raised as `ProviderError`
        subclasses; no `httpx` exception leaves this method.
        """

        start = time.perf_counter()
        outcome = "ok"
        try:
            with provider_span(self.name, operation) as span:
                async with self._client() as client:
                    resp = await client.request(method, path, **kwargs)
                span.set_attribute("http.status_code", resp.status_code)
        except httpx.ConnectTimeout as exc:
            outcome = "timeout"
            raise ProviderUnavailableError(
                self.name, "NETWORK_ERROR", f"{self.name} is unreachable", raw={"error": str(exc)}
            ) from exc
        except httpx.TimeoutException as exc:
            outcome = "timeout"
            raise ProviderUnavailableError(
                self.name,
                "TIMEOUT",
                f"{self.name} did not answer in time",
                raw={"error": str(exc)},
                ambiguous=True,
            ) from exc
        except httpx.ConnectError as exc:
            outcome = "network_error"
            raise ProviderUnavailableError(
                self.name, "NETWORK_ERROR", f"{self.name} is unreachable", raw={"error": str(exc)}
            ) from exc
        except httpx.HTTPError as exc:
            outcome = "network_error"
            raise ProviderUnavailableError(
                self.name,
                "NETWORK_ERROR",
                f"{self.name} connection failed",
                raw={"error": str(exc)},
                ambiguous=True,
            ) from exc
        finally:
            provider_latency_seconds.labels(provider=self.name, operation=operation).observe(
                max(0.0, time.perf_counter() - start)
            )
            if outcome != "ok":
                provider_requests_total.labels(provider=self.name, operation=operation, outcome=outcome).inc()

        body = self._decode(resp)
        if resp.status_code >= 400:
            provider_requests_total.labels(provider=self.name, operation=operation, outcome="http_error").inc()
            logger.error(
                "provider_error provider=%s operation=%s http_status=%s body=%s",
                self.name,
                operation,
                resp.status_code,
                body,
            )
            raise self.map_error(body)
        provider_requests_total.labels(provider=self.name, operation=operation, outcome="ok").inc()
        return body

    @staticmethod
    def _decode(resp: httpx.Response) -> dict[str, Any]:
        try:
            body = resp.json()
        except ValueError:
            return {"raw": resp.text}
        return body if isinstance(body, dict) else {"data": body}

    def _error_code(self, body: dict[str, Any]) -> str | None:
        return body.get("code")

    def _error_message(self, body: dict[str, Any]) -> str | None:
        return body.get("message")

    def map_error(self, body: dict[str, Any]) -> ProviderError:
        """Translate a provider error body through this provider's error map.

        Unmapped codes keep the provider message with a 500 status hint.
        """

        code = self._error_code(body) or "UNKNOWN_ERROR"
        if code in self.error_map:
            message, status_code = self.error_map[code]
            return provider_error(self.name, code, message, status_code, raw=body)
        return ProviderError(
            self.name,
            code,
            self._error_message(body) or self.default_error_message,
            status_code=500,
            raw=body,
        )

    def normalize_status(self, provider_status: str | None) -> str:
        """Translate this provider's status vocabulary to canonical strings.

        Unknown values are passed through lower-cased so that the canonical
        map can fail them closed.
        """

        if not provider_status:
            return ""
        return self.status_aliases.get(provider_status.strip().upper(), provider_status.strip().lower())

    def validate_amount(self, amount: int) -> None:
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValidationError("Amount must be a positive integer")

    def check_refund_amount(self, amount: int, original_amount: int | None) -> None:
        self.validate_amount(amount)
        if original_amount is None:
            return
        if amount > original_amount:
            raise ValidationError("Refund amount cannot exceed the original payment")
        if not self.supports_partial_refund and amount != original_amount:
            raise ValidationError(f"{self.name} only supports refunding the full payment amount")

    async def pay(self, instruction: PaymentInstruction) -> ProviderPaymentResult:
        raise NotImplementedError

    async def check_status(self, provider_reference: str) -> ProviderStatusResult:
        raise NotImplementedError

    async def refund(
        self,
        provider_reference: str,
        amount: int,
        reason: str,
        currency: str = "XOF",
        original_amount: int | None = None,
    ) -> ProviderRefundResult:
        raise NotImplementedError

    async def check_refund_status(self, refund_reference: str) -> ProviderRefundResult:
        raise NotImplementedError

    def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> bool:
        """Check an HMAC-SHA256 hex signature of the raw body."""

        secret = self.config.webhook_secret
        if not secret:
            logger.error("webhook_secret_missing provider=%s", self.name)
            return False
        signature = headers.get(self.signature_header, "")
        if signature.startswith("sha256="):
            signature = signature[len("sha256="):]
        if not signature:
            return False
        expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature)

    def parse_webhook(self, payload: dict[str, Any]) -> WebhookEvent | None:
        raise NotImplementedError

    async def _ping(self) -> None:
        await self._request("health", "GET", self.health_path)

    async def health_check(self) -> dict[str, Any]:
        try:
            await self._ping()
        except ProviderError as exc:
            return {"provider": self.name, "healthy": False, "error": exc.message}
        return {"provider": self.name, "healthy": True, "error": None}
