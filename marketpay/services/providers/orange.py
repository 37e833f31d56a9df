"""Orange Money payment API adapter."""

from typing import Any

from marketpay.services.providers.base import PaymentInstruction
from marketpay.services.providers.mobile_money import MobileMoneyAdapter
from marketpay.services.providers.phone import ORANGE_PATTERNS


class OrangeMoneyAdapter(MobileMoneyAdapter):
    name = "orange_money"
    phone_patterns = ORANGE_PATTERNS
    payment_path = "/payment"
    next_action_type = "redirect_or_otp"
    instructions = "Confirm in the Orange Money app or follow the payment link"
    default_error_message = "Orange Money error"
    signature_header = "x-orange-signature"
    error_map = {
        "INSUFFICIENT_BALANCE": ("Insufficient funds on the Orange Money account", 402),
        "INVALID_PHONE_NUMBER": ("Invalid phone number", 400),
        "TRANSACTION_DECLINED": ("Transaction declined", 402),
        "TIMEOUT": ("Transaction timed out", 408),
        "NETWORK_ERROR": ("Orange Money network error", 503),
        "DAILY_LIMIT_EXCEEDED": ("Daily transaction limit reached", 429),
    }

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["X-Auth-Token"] = headers.pop("X-Secret-Key")
        return headers

    def _error_message(self, body: dict[str, Any]) -> str | None:
        return body.get("error_message")

    def _payment_payload(self, instruction: PaymentInstruction, phone: str, amount: int) -> dict[str, Any]:
        return {
            "amount": amount,
            "currency": instruction.currency.upper(),
            "customer_phone": phone,
            "order_id": instruction.order_id,
            "description": self._description(instruction.order_id),
            "return_url": instruction.callback_url,
            "metadata": {"source": "marketpay", "order_id": instruction.order_id, **instruction.metadata},
        }

    def _payment_status(self, body: dict[str, Any]) -> str:
        # The payment endpoint only answers with a link and/or a transaction id.
        if body.get("status"):
            return self.normalize_status(body["status"])
        if body.get("payment_url") or body.get("transaction_id"):
            return "pending"
        return "failed"

    def _next_action(self, body: dict[str, Any]) -> dict[str, Any]:
        action = super()._next_action(body)
        if body.get("payment_url"):
            action["url"] = body["payment_url"]
        return action
