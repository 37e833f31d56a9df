"""Wave charges API adapter.

Wave references a payment by its charge id and only refunds whole charges.
"""

from datetime import datetime, timezone
from typing import Any

from marketpay.services.providers.base import PaymentInstruction, WebhookEvent
from marketpay.services.providers.mobile_money import MobileMoneyAdapter
from marketpay.services.providers.phone import WAVE_PATTERNS


class WaveAdapter(MobileMoneyAdapter):
    name = "wave"
    phone_patterns = WAVE_PATTERNS
    payment_path = "/charges"
    next_action_type = "redirect_or_qr"
    instructions = "Scan the QR code or open the payment link"
    default_error_message = "Wave error"
    supports_partial_refund = False
    signature_header = "wave-signature"
    error_map = {
        "insufficient_funds": ("Insufficient funds on the Wave account", 402),
        "invalid_phone_number": ("Invalid phone number", 400),
        "payment_declined": ("Payment declined", 402),
        "timeout": ("Transaction timed out", 408),
        "network_error": ("Wave network error", 503),
    }

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["X-Merchant-Id"] = headers.pop("X-Merchant-Code")
        return headers

    def _error_code(self, body: dict[str, Any]) -> str | None:
        return (body.get("error") or {}).get("code")

    def _error_message(self, body: dict[str, Any]) -> str | None:
        return (body.get("error") or {}).get("message") or body.get("error_message")

    def _payment_payload(self, instruction: PaymentInstruction, phone: str, amount: int) -> dict[str, Any]:
        return {
            "amount": amount,
            "currency": instruction.currency.lower(),
            "customer": {"phone_number": phone},
            "callback_url": instruction.callback_url,
            "metadata": {
                "order_id": instruction.order_id,
                "description": self._description(instruction.order_id),
                "source": "marketpay",
                **instruction.metadata,
            },
        }

    def _payment_reference(self, body: dict[str, Any]) -> str | None:
        return body.get("id")

    def _next_action(self, body: dict[str, Any]) -> dict[str, Any]:
        action = super()._next_action(body)
        if body.get("hosted_url"):
            action["url"] = body["hosted_url"]
        return action

    def _status_path(self, provider_reference: str) -> str:
        return f"/charges/{provider_reference}"

    def _refund_path(self, provider_reference: str) -> str:
        return f"/charges/{provider_reference}/refund"

    def _refund_status_path(self, refund_reference: str) -> str:
        return f"/refunds/{refund_reference}"

    def _refund_payload(self, provider_reference: str, amount: int, reason: str) -> dict[str, Any]:
        return {
            "amount": amount,
            "reason": reason,
            "metadata": {
                "refund_timestamp": datetime.now(timezone.utc).isoformat(),
                "processed_by": "marketpay",
            },
        }

    def _refund_reference(self, body: dict[str, Any]) -> str | None:
        return body.get("id")

    def parse_webhook(self, payload: dict[str, Any]) -> WebhookEvent | None:
        charge = payload.get("data") or payload
        metadata = charge.get("metadata") or {}
        return WebhookEvent(
            payment_id=metadata.get("payment_record_id"),
            provider_status=self.normalize_status(charge.get("status")),
            provider_reference=charge.get("id"),
            event_id=payload.get("id") if "data" in payload else None,
        )
