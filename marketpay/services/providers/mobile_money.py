"""Shared behaviour of phone-addressed mobile-money providers."""

from datetime import datetime, timezone
from typing import Any

from marketpay.common.errors import ValidationError
from marketpay.common.logging import logger
from marketpay.services.providers.base import (
    PaymentInstruction,
    ProviderAdapter,
    ProviderPaymentResult,
    ProviderRefundResult,
    ProviderStatusResult,
    WebhookEvent,
    currency_exponent,
)
from marketpay.services.providers.phone import format_phone_number, matches_any

MOBILE_MONEY_STATUS_ALIASES = {
    "PENDING": "pending",
    "INITIATED": "pending",
    "PROCESSING": "processing",
    "SUCCESS": "succeeded",
    "SUCCESSFUL": "succeeded",
    "SUCCEEDED": "succeeded",
    "COMPLETED": "succeeded",
    "FAILED": "failed",
    "DECLINED": "failed",
    "EXPIRED": "failed",
    "REJECTED": "failed",
    "CANCELLED": "cancelled",
    "CANCELED": "cancelled",
}

REFUND_STATUS_ALIASES = {
    "SUCCESS": "succeeded",
    "SUCCEEDED": "succeeded",
    "REFUNDED": "succeeded",
    "PENDING": "pending",
    "PROCESSING": "pending",
}


def to_major_units(amount: int, currency: str) -> int:
    """Convert smallest-unit amounts to the whole units mobile money expects."""

    factor = 10 ** currency_exponent(currency)
    if amount % factor:
        raise ValidationError(f"Mobile money amounts must be whole {currency.upper()} units")
    return amount // factor


def to_minor_units(amount: int, currency: str) -> int:
    return amount * 10 ** currency_exponent(currency)


class MobileMoneyAdapter(ProviderAdapter):
    """Template for MTN, Orange and Wave.

    Subclasses supply the numbering whitelist, endpoint paths and the payload
    / response field names of their API.
    """

    phone_patterns: tuple = ()
    status_aliases = MOBILE_MONEY_STATUS_ALIASES
    payment_path = "/payment"
    refund_path = "/refund"
    next_action_type = "verify_otp"
    instructions = ""
    accepted_payment_statuses = {"pending", "processing", "succeeded"}

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["Authorization"] = f"Bearer {self.config.api_key}"
        headers["X-Merchant-Code"] = self.config.merchant_code
        headers["X-Secret-Key"] = self.config.secret_key
        return headers

    def format_phone_number(self, phone_number: str) -> str:
        return format_phone_number(phone_number, self.config.default_country_code)

    def is_valid_number(self, phone_number: str) -> bool:
        return matches_any(self.format_phone_number(phone_number), self.phone_patterns)

    def validate_recipient(self, phone_number: str) -> str:
        """Return the normalized number or raise before any network call."""

        if not phone_number:
            raise ValidationError("Phone number is required for mobile money")
        formatted = self.format_phone_number(phone_number)
        if not matches_any(formatted, self.phone_patterns):
            raise ValidationError(f"Invalid number for this provider ({self.name})", code="INVALID_NUMBER")
        return formatted

    def _description(self, order_id: str) -> str:
        return f"Marketplace payment - order {order_id}"

    def _payment_payload(self, instruction: PaymentInstruction, phone: str, amount: int) -> dict[str, Any]:
        raise NotImplementedError

    def _status_path(self, provider_reference: str) -> str:
        return f"/transaction/{provider_reference}"

    def _payment_reference(self, body: dict[str, Any]) -> str | None:
        return body.get("transaction_id")

    def _payment_status(self, body: dict[str, Any]) -> str:
        return self.normalize_status(body.get("status"))

    def _next_action(self, body: dict[str, Any]) -> dict[str, Any]:
        return {"type": self.next_action_type, "instructions": self.instructions}

    def _refund_payload(self, provider_reference: str, amount: int, reason: str) -> dict[str, Any]:
        return {
            "original_transaction_id": provider_reference,
            "amount": amount,
            "reason": reason,
            "metadata": {
                "refund_timestamp": datetime.now(timezone.utc).isoformat(),
                "processed_by": "marketpay",
            },
        }

    def _refund_path(self, provider_reference: str) -> str:
        return self.refund_path

    def _refund_reference(self, body: dict[str, Any]) -> str | None:
        return body.get("refund_id")

    async def pay(self, instruction: PaymentInstruction) -> ProviderPaymentResult:
        self.validate_amount(instruction.amount)
        phone = self.validate_recipient(instruction.recipient)
        amount = to_major_units(instruction.amount, instruction.currency)
        logger.info(
            "provider_payment_initiated provider=%s order_id=%s amount=%s phone=%s",
            self.name,
            instruction.order_id,
            amount,
            phone,
        )
        body = await self._request(
            "pay", "POST", self.payment_path, json=self._payment_payload(instruction, phone, amount)
        )
        status = self._payment_status(body)
        success = status in self.accepted_payment_statuses
        return ProviderPaymentResult(
            success=success,
            provider_status=status,
            provider_reference=self._payment_reference(body),
            raw_response=body,
            verification_required=success,
            next_action=self._next_action(body) if success else None,
            message="Payment initiated" if success else (self._error_message(body) or "Payment was not accepted"),
        )

    async def check_status(self, provider_reference: str) -> ProviderStatusResult:
        body = await self._request("check_status", "GET", self._status_path(provider_reference))
        return ProviderStatusResult(provider_status=self.normalize_status(body.get("status")), raw_response=body)

    async def refund(
        self,
        provider_reference: str,
        amount: int,
        reason: str,
        currency: str = "XOF",
        original_amount: int | None = None,
    ) -> ProviderRefundResult:
        self.check_refund_amount(amount, original_amount)
        body = await self._request(
            "refund",
            "POST",
            self._refund_path(provider_reference),
            json=self._refund_payload(provider_reference, to_major_units(amount, currency), reason),
        )
        return self._refund_result(body)

    def _refund_status_path(self, refund_reference: str) -> str:
        return f"{self.refund_path}/{refund_reference}"

    def _refund_result(self, body: dict[str, Any], refund_reference: str | None = None) -> ProviderRefundResult:
        status = REFUND_STATUS_ALIASES.get(str(body.get("status") or "").upper(), "failed")
        return ProviderRefundResult(
            success=status != "failed",
            provider_status=status,
            provider_reference=self._refund_reference(body) or refund_reference,
            raw_response=body,
        )

    async def check_refund_status(self, refund_reference: str) -> ProviderRefundResult:
        body = await self._request("check_refund_status", "GET", self._refund_status_path(refund_reference))
        return self._refund_result(body, refund_reference)

    def parse_webhook(self, payload: dict[str, Any]) -> WebhookEvent | None:
        metadata = payload.get("metadata") or {}
        return WebhookEvent(
            payment_id=metadata.get("payment_record_id"),
            provider_status=self.normalize_status(payload.get("status")),
            provider_reference=payload.get("transaction_id"),
            event_id=payload.get("event_id"),
        )
