"""Card payments through the Stripe PaymentIntents API.

Calls go through `stripe.StripeClient` (its async httpx transport). SDK
exceptions are translated into the payment error taxonomy here, so no
`stripe` exception leaves the adapter.
"""

import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import stripe

from marketpay.common.errors import (
    ProviderDeclinedError,
    ProviderError,
    ProviderUnavailableError,
    ValidationError,
    provider_error,
)
from marketpay.common.logging import logger
from marketpay.common.metrics import provider_latency_seconds, provider_requests_total
from marketpay.common.tracing import provider_span
from marketpay.services.providers.base import (
    PaymentInstruction,
    ProviderAdapter,
    ProviderConfig,
    ProviderPaymentResult,
    ProviderRefundResult,
    ProviderStatusResult,
    WebhookEvent,
)

WEBHOOK_TOLERANCE_SECONDS = 300

CARD_STATUS_MESSAGES = {
    "succeeded": "Payment succeeded",
    "processing": "Payment is being processed",
    "requires_action": "Additional authentication required",
    "requires_confirmation": "Payment requires confirmation",
    "failed": "Invalid payment method",
    "cancelled": "Payment cancelled",
}

REFUND_STATUSES = {"succeeded": "succeeded", "pending": "pending", "requires_action": "pending"}


def build_stripe_client(config: ProviderConfig) -> stripe.StripeClient:
    return stripe.StripeClient(
        config.secret_key or config.api_key,
        stripe_version=config.api_version or None,
        base_addresses={"api": config.base_url},
        http_client=stripe.HTTPXClient(timeout=config.timeout_seconds),
        # Retries belong to the orchestrator, which knows whether a call was ambiguous.
        max_network_retries=0,
    )


class StripeCardAdapter(ProviderAdapter):
    name = "stripe"
    default_error_message = "Card payment error"
    signature_header = "stripe-signature"
    status_aliases = {
        "REQUIRES_PAYMENT_METHOD": "failed",
        "REQUIRES_CAPTURE": "processing",
        "CANCELED": "cancelled",
    }
    error_map = {
        "card_declined": ("Card declined", 402),
        "insufficient_funds": ("Insufficient funds on the card", 402),
        "expired_card": ("Card expired", 402),
        "incorrect_cvc": ("Incorrect security code", 402),
        "authentication_required": ("Card authentication required", 402),
        "rate_limit": ("Card processor is busy, try again", 429),
        "api_connection_error": ("Card processor unreachable", 503),
        "invalid_request_error": ("Invalid card payment request", 400),
    }

    def __init__(self, config: ProviderConfig, client: stripe.StripeClient | None = None) -> None:
        super().__init__(config)
        self.client = client or build_stripe_client(config)

    def _error_code(self, body: dict[str, Any]) -> str | None:
        error = body.get("error") or {}
        return error.get("decline_code") or error.get("code") or error.get("type")

    def _error_message(self, body: dict[str, Any]) -> str | None:
        return (body.get("error") or {}).get("message")

    def map_stripe_error(self, exc: stripe.StripeError) -> ProviderError:
        """Translate an SDK exception into a provider error.

        Card errors are declines keyed by `decline_code`; connection and
        server errors are ambiguous because the request may have been applied.
        """

        body = exc.json_body if isinstance(exc.json_body, dict) else {}
        raw = body or {"error": {"message": str(exc)}}
        if isinstance(exc, stripe.CardError):
            code = self._error_code(body) or exc.code or "card_declined"
            message, _ = self.error_map.get(code, self.error_map["card_declined"])
            return ProviderDeclinedError(self.name, code, message, raw=raw)
        if isinstance(exc, stripe.RateLimitError):
            message, status_code = self.error_map["rate_limit"]
            return provider_error(self.name, "rate_limit", message, status_code, raw=raw)
        if isinstance(exc, (stripe.APIConnectionError, stripe.APIError)):
            message, status_code = self.error_map["api_connection_error"]
            return ProviderUnavailableError(
                self.name, "api_connection_error", message, status_code=status_code, raw=raw, ambiguous=True
            )
        if isinstance(exc, stripe.InvalidRequestError):
            message, status_code = self.error_map["invalid_request_error"]
            return ProviderError(self.name, "invalid_request_error", message, status_code=status_code, raw=raw)
        return self.map_error(raw)

    async def _call(
        self, operation: str, call: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any
    ) -> dict[str, Any]:
        start = time.perf_counter()
        outcome = "ok"
        try:
            with provider_span(self.name, operation):
                obj = await call(*args, **kwargs)
        except stripe.StripeError as exc:
            outcome = "network_error" if isinstance(exc, stripe.APIConnectionError) else "http_error"
            error = self.map_stripe_error(exc)
            logger.error(
                "provider_error provider=%s operation=%s code=%s error=%s",
                self.name,
                operation,
                error.code,
                exc,
            )
            raise error from exc
        finally:
            provider_latency_seconds.labels(provider=self.name, operation=operation).observe(
                max(0.0, time.perf_counter() - start)
            )
            provider_requests_total.labels(provider=self.name, operation=operation, outcome=outcome).inc()
        return obj.to_dict()

    async def pay(self, instruction: PaymentInstruction) -> ProviderPaymentResult:
        self.validate_amount(instruction.amount)
        if not instruction.recipient:
            raise ValidationError("A card payment method is required")
        metadata = {"order_id": instruction.order_id, **instruction.metadata}
        params: dict[str, Any] = {
            # Stripe takes the smallest currency unit, which is what we store.
            "amount": instruction.amount,
            "currency": instruction.currency.lower(),
            "payment_method": instruction.recipient,
            "confirm": True,
            "capture_method": "automatic",
            "payment_method_types": ["card"],
            "metadata": {key: str(value) for key, value in metadata.items() if value is not None},
        }
        if instruction.callback_url:
            params["return_url"] = instruction.callback_url
        options = {}
        if instruction.metadata.get("payment_record_id"):
            options["idempotency_key"] = str(instruction.metadata["payment_record_id"])
        logger.info(
            "provider_payment_initiated provider=%s order_id=%s amount=%s",
            self.name,
            instruction.order_id,
            instruction.amount,
        )
        body = await self._call("pay", self.client.v1.payment_intents.create_async, params=params, options=options)
        status = self.normalize_status(body.get("status"))
        return ProviderPaymentResult(
            success=status == "succeeded",
            provider_status=status,
            provider_reference=body.get("id"),
            raw_response=body,
            verification_required=status == "requires_action",
            next_action=body.get("next_action"),
            message=CARD_STATUS_MESSAGES.get(status, "Card payment error"),
        )

    async def check_status(self, provider_reference: str) -> ProviderStatusResult:
        body = await self._call("check_status", self.client.v1.payment_intents.retrieve_async, provider_reference)
        return ProviderStatusResult(provider_status=self.normalize_status(body.get("status")), raw_response=body)

    def _refund_result(self, body: dict[str, Any]) -> ProviderRefundResult:
        status = REFUND_STATUSES.get(str(body.get("status") or ""), "failed")
        return ProviderRefundResult(
            success=status != "failed",
            provider_status=status,
            provider_reference=body.get("id"),
            raw_response=body,
        )

    async def refund(
        self,
        provider_reference: str,
        amount: int,
        reason: str,
        currency: str = "XOF",
        original_amount: int | None = None,
    ) -> ProviderRefundResult:
        self.check_refund_amount(amount, original_amount)
        body = await self._call(
            "refund",
            self.client.v1.refunds.create_async,
            params={
                "payment_intent": provider_reference,
                "amount": amount,
                "reason": "requested_by_customer",
                "metadata": {"reason": reason},
            },
        )
        return self._refund_result(body)

    async def check_refund_status(self, refund_reference: str) -> ProviderRefundResult:
        body = await self._call("check_refund_status", self.client.v1.refunds.retrieve_async, refund_reference)
        return self._refund_result(body)

    async def _ping(self) -> None:
        await self._call("health", self.client.v1.balance.retrieve_async)

    def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> bool:
        secret = self.config.webhook_secret
        if not secret:
            logger.error("webhook_secret_missing provider=%s", self.name)
            return False
        signature = headers.get(self.signature_header, "")
        if not signature:
            return False
        try:
            stripe.WebhookSignature.verify_header(
                body.decode("utf-8"), signature, secret, tolerance=WEBHOOK_TOLERANCE_SECONDS
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
            logger.warning("stripe_signature_rejected error=%s", exc)
            return False
        return True

    def parse_webhook(self, payload: dict[str, Any]) -> WebhookEvent | None:
        event_type = payload.get("type", "")
        if not event_type.startswith("payment_intent."):
            return None
        intent = (payload.get("data") or {}).get("object") or {}
        metadata = intent.get("metadata") or {}
        return WebhookEvent(
            payment_id=metadata.get("payment_record_id"),
            provider_status=self.normalize_status(intent.get("status")),
            provider_reference=intent.get("id"),
            event_id=payload.get("id"),
        )
