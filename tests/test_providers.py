"""Provider adapters against scripted provider HTTP."""

import hashlib
import hmac
import json
import time

import httpx
import pytest
import stripe

from marketpay.common.errors import (
    ProviderDeclinedError,
    ProviderError,
    ProviderUnavailableError,
    ValidationError,
)
from marketpay.services.providers.base import PaymentInstruction
from marketpay.services.providers.registry import build_registry


def instruction(recipient: str, amount: int = 5000, currency: str = "XOF") -> PaymentInstruction:
    return PaymentInstruction(
        amount=amount,
        currency=currency,
        recipient=recipient,
        order_id="order-1",
        callback_url="https://shop.test/webhooks/payments/x",
        metadata={"payment_record_id": "pay-1"},
    )


async def test_mtn_pay_sends_normalized_msisdn(registry, provider_stub):
    provider_stub.add("POST", "mtn.test", "/v1/collection", body={"status": "PENDING", "transaction_id": "tx1"})
    adapter = registry.get("mtn_money")

    result = await adapter.pay(instruction("0707123456"))

    assert result.success
    assert result.provider_status == "pending"
    assert result.provider_reference == "tx1"
    assert result.verification_required
    assert result.next_action["type"] == "verify_otp"
    sent = provider_stub.json_bodies()[0]
    assert sent["customer_msisdn"] == "+225707123456"
    assert sent["amount"] == 5000
    assert sent["metadata"]["payment_record_id"] == "pay-1"
    request = provider_stub.requests[0]
    assert request.headers["Authorization"] == "Bearer mtn-key"
    assert request.headers["X-Merchant-Code"] == "MTN-MERCHANT"


async def test_invalid_number_rejected_before_http(registry, provider_stub):
    with pytest.raises(ValidationError) as exc_info:
        await registry.get("mtn_money").pay(instruction("0709999999"))

    assert exc_info.value.code == "INVALID_NUMBER"
    assert provider_stub.requests == []


async def test_mapped_error_keeps_status_hint(registry, provider_stub):
    provider_stub.add(
        "POST", "mtn.test", "/v1/collection", status_code=400, body={"code": "INSUFFICIENT_FUNDS", "message": "x"}
    )

    with pytest.raises(ProviderDeclinedError) as exc_info:
        await registry.get("mtn_money").pay(instruction("0707123456"))

    assert exc_info.value.status_code == 402
    assert exc_info.value.code == "INSUFFICIENT_FUNDS"


async def test_throttling_code_is_unavailable(registry, provider_stub):
    provider_stub.add(
        "POST",
        "orange.test",
        "/orangemoney/payment",
        status_code=429,
        body={"code": "DAILY_LIMIT_EXCEEDED", "error_message": "limit"},
    )

    with pytest.raises(ProviderUnavailableError) as exc_info:
        await registry.get("orange_money").pay(instruction("0707123456"))

    assert exc_info.value.status_code == 429
    assert not exc_info.value.ambiguous


async def test_unmapped_error_code_gets_500(registry, provider_stub):
    provider_stub.add("POST", "mtn.test", "/v1/collection", status_code=400, body={"code": "WHATEVER", "message": "odd"})

    with pytest.raises(ProviderError) as exc_info:
        await registry.get("mtn_money").pay(instruction("0707123456"))

    assert type(exc_info.value) is ProviderError
    assert exc_info.value.status_code == 500
    assert exc_info.value.message == "odd"


async def test_read_timeout_is_ambiguous(registry, provider_stub):
    provider_stub.add("POST", "mtn.test", "/v1/collection", exc=httpx.ReadTimeout)

    with pytest.raises(ProviderUnavailableError) as exc_info:
        await registry.get("mtn_money").pay(instruction("0707123456"))

    assert exc_info.value.code == "TIMEOUT"
    assert exc_info.value.ambiguous


async def test_connect_error_is_not_ambiguous(registry, provider_stub):
    provider_stub.add("POST", "wave.test", "/v1/charges", exc=httpx.ConnectError)

    with pytest.raises(ProviderUnavailableError) as exc_info:
        await registry.get("wave").pay(instruction("0707123456"))

    assert exc_info.value.code == "NETWORK_ERROR"
    assert not exc_info.value.ambiguous


async def test_orange_payment_link_means_pending(registry, provider_stub):
    provider_stub.add(
        "POST", "orange.test", "/orangemoney/payment", body={"payment_url": "https://pay.test/x", "transaction_id": "om1"}
    )

    result = await registry.get("orange_money").pay(instruction("0707123456"))

    assert result.provider_status == "pending"
    assert result.provider_reference == "om1"
    assert result.next_action["url"] == "https://pay.test/x"
    assert provider_stub.requests[0].headers["X-Auth-Token"] == "orange-secret"


async def test_wave_refuses_partial_refund(registry, provider_stub):
    with pytest.raises(ValidationError):
        await registry.get("wave").refund("ch_1", 1000, "partial", original_amount=5000)
    assert provider_stub.requests == []


async def test_wave_full_refund(registry, provider_stub):
    provider_stub.add("POST", "wave.test", "/v1/charges/ch_1/refund", body={"id": "rf_1", "status": "succeeded"})

    result = await registry.get("wave").refund("ch_1", 5000, "customer request", original_amount=5000)

    assert result.success
    assert result.provider_status == "succeeded"
    assert result.provider_reference == "rf_1"


async def test_refund_above_original_rejected(registry):
    with pytest.raises(ValidationError):
        await registry.get("mtn_money").refund("tx1", 6000, "too much", original_amount=5000)


async def test_mobile_money_status_aliases(registry, provider_stub):
    provider_stub.add("GET", "mtn.test", "/v1/transaction/tx1", body={"status": "SUCCESSFUL"})

    result = await registry.get("mtn_money").check_status("tx1")

    assert result.provider_status == "succeeded"


async def test_stripe_pay_creates_intent_in_smallest_unit(registry, stripe_api):
    create = stripe_api.answer(
        "payment_intents",
        "create_async",
        {"id": "pi_1", "status": "requires_action", "next_action": {"type": "redirect_to_url"}},
    )

    result = await registry.get("stripe").pay(instruction("pm_card_visa", amount=2500, currency="EUR"))

    assert result.provider_status == "requires_action"
    assert result.verification_required
    assert result.next_action == {"type": "redirect_to_url"}
    params = create.await_args.kwargs["params"]
    assert params["amount"] == 2500
    assert params["currency"] == "eur"
    assert params["payment_method"] == "pm_card_visa"
    assert params["payment_method_types"] == ["card"]
    assert params["metadata"] == {"order_id": "order-1", "payment_record_id": "pay-1"}
    assert params["return_url"] == "https://shop.test/webhooks/payments/x"
    assert create.await_args.kwargs["options"] == {"idempotency_key": "pay-1"}


async def test_stripe_status_aliases(registry, stripe_api):
    retrieve = stripe_api.answer("payment_intents", "retrieve_async", {"id": "pi_1", "status": "canceled"})

    result = await registry.get("stripe").check_status("pi_1")

    assert result.provider_status == "cancelled"
    assert retrieve.await_args.args == ("pi_1",)
    assert registry.get("stripe").normalize_status("requires_payment_method") == "failed"
    assert registry.get("stripe").normalize_status("requires_capture") == "processing"


async def test_stripe_decline_code(registry, stripe_api):
    stripe_api.answer(
        "payment_intents",
        "create_async",
        exc=stripe.CardError(
            "Your card has insufficient funds.",
            None,
            "card_declined",
            http_status=402,
            json_body={"error": {"type": "card_error", "code": "card_declined", "decline_code": "insufficient_funds"}},
        ),
    )

    with pytest.raises(ProviderDeclinedError) as exc_info:
        await registry.get("stripe").pay(instruction("pm_card_visa"))

    assert exc_info.value.code == "insufficient_funds"
    assert exc_info.value.status_code == 402


@pytest.mark.parametrize(
    "exc, error_type, code, status_code",
    [
        (stripe.RateLimitError("Too many requests"), ProviderUnavailableError, "rate_limit", 429),
        (stripe.APIConnectionError("Connection reset"), ProviderUnavailableError, "api_connection_error", 503),
        (stripe.InvalidRequestError("No such payment_method", "payment_method"), ProviderError, "invalid_request_error", 400),
    ],
)
async def test_stripe_sdk_errors_are_classified(registry, stripe_api, exc, error_type, code, status_code):
    stripe_api.answer("payment_intents", "create_async", exc=exc)

    with pytest.raises(error_type) as exc_info:
        await registry.get("stripe").pay(instruction("pm_card_visa"))

    assert exc_info.value.code == code
    assert exc_info.value.status_code == status_code
    assert not isinstance(exc_info.value, ProviderDeclinedError)


async def test_stripe_connection_error_is_ambiguous(registry, stripe_api):
    stripe_api.answer("payment_intents", "create_async", exc=stripe.APIConnectionError("Read timed out"))

    with pytest.raises(ProviderUnavailableError) as exc_info:
        await registry.get("stripe").pay(instruction("pm_card_visa"))

    assert exc_info.value.ambiguous


async def test_stripe_refund_status(registry, stripe_api):
    create = stripe_api.answer("refunds", "create_async", {"id": "re_1", "status": "pending"})
    stripe_api.answer("refunds", "retrieve_async", {"id": "re_1", "status": "succeeded"})
    adapter = registry.get("stripe")

    pending = await adapter.refund("pi_1", 1000, "customer request", currency="EUR", original_amount=2500)
    settled = await adapter.check_refund_status("re_1")

    assert create.await_args.kwargs["params"]["payment_intent"] == "pi_1"
    assert create.await_args.kwargs["params"]["amount"] == 1000
    assert (pending.provider_status, pending.provider_reference) == ("pending", "re_1")
    assert settled.provider_status == "succeeded"


async def test_mobile_money_refund_status(registry, provider_stub):
    provider_stub.add("GET", "mtn.test", "/v1/refund/rf1", body={"refund_id": "rf1", "status": "REFUNDED"})
    provider_stub.add("GET", "wave.test", "/v1/refunds/rf2", body={"id": "rf2", "status": "FAILED"})

    mtn = await registry.get("mtn_money").check_refund_status("rf1")
    wave = await registry.get("wave").check_refund_status("rf2")

    assert (mtn.provider_status, mtn.provider_reference) == ("succeeded", "rf1")
    assert (wave.provider_status, wave.success) == ("failed", False)


def test_hmac_webhook_signature(registry):
    adapter = registry.get("mtn_money")
    body = b'{"status": "SUCCESS"}'
    signature = hmac.new(b"mtn-whsec", body, hashlib.sha256).hexdigest()

    assert adapter.verify_webhook(body, {"x-mtn-signature": signature})
    assert adapter.verify_webhook(body, {"x-mtn-signature": f"sha256={signature}"})
    assert not adapter.verify_webhook(body, {"x-mtn-signature": "0" * 64})
    assert not adapter.verify_webhook(body, {})


def test_missing_webhook_secret_fails_closed(test_settings):
    registry = build_registry(test_settings.model_copy(update={"wave_webhook_secret": ""}))
    body = b"{}"
    signature = hmac.new(b"", body, hashlib.sha256).hexdigest()

    assert not registry.get("wave").verify_webhook(body, {"wave-signature": signature})


def test_stripe_webhook_signature(registry):
    adapter = registry.get("stripe")
    body = json.dumps({"id": "evt_1", "type": "payment_intent.succeeded"})
    timestamp = int(time.time())
    digest = hmac.new(b"whsec_test", f"{timestamp}.{body}".encode(), hashlib.sha256).hexdigest()

    assert adapter.verify_webhook(body.encode(), {"stripe-signature": f"t={timestamp},v1={digest}"})
    assert not adapter.verify_webhook(body.encode(), {"stripe-signature": f"t={timestamp},v1={'0' * 64}"})


def test_webhook_parsing(registry):
    mtn_event = registry.get("mtn_money").parse_webhook(
        {"status": "SUCCESS", "transaction_id": "tx1", "metadata": {"payment_record_id": "pay-1"}}
    )
    assert mtn_event.payment_id == "pay-1"
    assert mtn_event.provider_status == "succeeded"

    wave_event = registry.get("wave").parse_webhook(
        {"id": "evt_w", "data": {"id": "ch_1", "status": "succeeded", "metadata": {"payment_record_id": "pay-2"}}}
    )
    assert wave_event.payment_id == "pay-2"
    assert wave_event.provider_reference == "ch_1"
    assert wave_event.event_id == "evt_w"

    assert registry.get("stripe").parse_webhook({"type": "charge.refunded", "data": {"object": {}}}) is None


async def test_health_check_reports_failure(registry, stripe_api):
    stripe_api.answer("balance", "retrieve_async", {"object": "balance"})

    assert (await registry.get("stripe").health_check())["healthy"]
    unhealthy = await registry.get("mtn_money").health_check()
    assert unhealthy == {"provider": "mtn_money", "healthy": False, "error": unhealthy["error"]}
    assert unhealthy["error"]
