"""MTN Mobile Money collection API adapter."""

from typing import Any

from marketpay.services.providers.base import PaymentInstruction
from marketpay.services.providers.mobile_money import MobileMoneyAdapter
from marketpay.services.providers.phone import MTN_PATTERNS


class MTNMoneyAdapter(MobileMoneyAdapter):
    name = "mtn_money"
    phone_patterns = MTN_PATTERNS
    payment_path = "/collection"
    next_action_type = "verify_otp"
    instructions = "You will receive an OTP code on your phone"
    default_error_message = "MTN Money error"
    signature_header = "x-mtn-signature"
    error_map = {
        "INSUFFICIENT_FUNDS": ("Insufficient funds on the Mobile Money account", 402),
        "INVALID_MSISDN": ("Invalid phone number", 400),
        "TRANSACTION_DECLINED": ("Transaction declined", 402),
        "TIMEOUT": ("Transaction timed out", 408),
        "NETWORK_ERROR": ("MTN Money network error", 503),
    }

    def _payment_payload(self, instruction: PaymentInstruction, phone: str, amount: int) -> dict[str, Any]:
        return {
            "amount": amount,
            "currency": instruction.currency.upper(),
            "customer_msisdn": phone,
            "merchant_reference": instruction.order_id,
            "description": self._description(instruction.order_id),
            "callback_url": instruction.callback_url,
            "metadata": {"source": "marketpay", "order_id": instruction.order_id, **instruction.metadata},
        }
