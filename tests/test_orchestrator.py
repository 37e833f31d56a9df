"""Payment orchestrator: payment, status check and refund flows."""

import asyncio
from unittest.mock import patch

import httpx
import pytest
import stripe
from prometheus_client import REGISTRY
from sqlalchemy import func, select

from marketpay.common.errors import (
    DuplicatePaymentError,
    NotFoundError,
    ProviderDeclinedError,
    ProviderUnavailableError,
    ValidationError,
)
from marketpay.services.payments.models import OutboxEvent, Payment, PaymentRefund
from marketpay.services.payments.schemas import CustomerInfo, PaymentRequest


def mtn_request(phone: str = "0707123456", amount: int = 5000) -> PaymentRequest:
    return PaymentRequest(
        order_id="order-1",
        amount=amount,
        currency="XOF",
        payment_method="mtn_money",
        customer_info=CustomerInfo(phone=phone),
    )


def card_request(amount: int = 5000) -> PaymentRequest:
    return PaymentRequest(
        order_id="order-1",
        amount=amount,
        currency="XOF",
        payment_method="visa",
        customer_info=CustomerInfo(payment_method_id="pm_card_visa", email="a@b.test"),
    )


def count_rows(session_factory, model) -> int:
    with session_factory() as db:
        return db.execute(select(func.count()).select_from(model)).scalar_one()


async def succeeded_card_payment(orchestrator, stripe_api, amount: int = 5000):
    stripe_api.answer("payment_intents", "create_async", {"id": "pi_1", "status": "succeeded"})
    return await orchestrator.process_payment(card_request(amount))


async def test_amount_below_minimum_never_reaches_a_provider(orchestrator, provider_stub, session_factory):
    with pytest.raises(ValidationError):
        await orchestrator.process_payment(mtn_request(amount=99))

    assert provider_stub.requests == []
    assert count_rows(session_factory, Payment) == 0


async def test_mobile_money_requires_phone(orchestrator, session_factory):
    request = PaymentRequest(order_id="order-1", amount=5000, payment_method="wave")

    with pytest.raises(ValidationError):
        await orchestrator.process_payment(request)
    assert count_rows(session_factory, Payment) == 0


async def test_card_requires_payment_method_id(orchestrator):
    request = PaymentRequest(order_id="order-1", amount=5000, payment_method="stripe")

    with pytest.raises(ValidationError):
        await orchestrator.process_payment(request)


async def test_mtn_pending_payment(orchestrator, provider_stub, store, make_order, order_status):
    """Provider answers PENDING/tx1: record is pending with reference tx1, order mirrored once."""

    make_order("order-1")
    provider_stub.add("POST", "mtn.test", "/v1/collection", body={"status": "PENDING", "transaction_id": "tx1"})

    with patch.object(store, "update_order_payment_status", wraps=store.update_order_payment_status) as mirror:
        result = await orchestrator.process_payment(mtn_request())

    assert result.success
    assert result.status == "pending"
    assert result.processor_reference == "tx1"
    assert result.verification_required
    mirror.assert_called_once_with("order-1", "pending")
    assert order_status("order-1") == "pending"

    payment = store.get_payment_record(result.payment_id)
    assert payment.status == "pending"
    assert payment.processor_reference == "tx1"
    assert payment.processor_response == {"status": "PENDING", "transaction_id": "tx1"}
    assert payment.state_version == 1
    assert provider_stub.json_bodies()[0]["customer_msisdn"] == "+225707123456"

    timeline = store.list_timeline(payment.id)
    assert [(row.from_state, row.to_state) for row in timeline] == [(None, "initiated"), ("initiated", "pending")]


async def test_prefix_01_is_accepted(orchestrator, provider_stub):
    provider_stub.add("POST", "mtn.test", "/v1/collection", body={"status": "PENDING", "transaction_id": "tx2"})

    result = await orchestrator.process_payment(mtn_request(phone="0701234567"))

    assert result.status == "pending"


async def test_unassigned_prefix_fails_before_http(orchestrator, provider_stub, store, session_factory):
    with pytest.raises(ValidationError):
        await orchestrator.process_payment(mtn_request(phone="0709999999"))

    assert provider_stub.requests == []
    with session_factory() as db:
        payment = db.execute(select(Payment)).scalar_one()
    assert payment.status == "failed"
    assert "Invalid number" in payment.error_message


async def test_cash_payment(orchestrator, provider_stub, make_order, order_status):
    make_order("order-1")
    request = PaymentRequest(
        order_id="order-1",
        amount=15000,
        payment_method="cash",
        customer_info=CustomerInfo(delivery_address={"city": "Abidjan"}),
    )

    result = await orchestrator.process_payment(request)

    assert result.status == "pending_cash"
    assert not result.verification_required
    assert result.processor_reference == f"CASH_{result.payment_id}"
    assert result.next_action["type"] == "wait_for_delivery"
    assert provider_stub.requests == []
    assert order_status("order-1") == "pending_cash"


async def test_unsupported_method_marks_record_failed(orchestrator, store, session_factory):
    request = PaymentRequest(order_id="order-1", amount=5000, payment_method="paypal")

    with pytest.raises(ProviderUnavailableError) as exc_info:
        await orchestrator.process_payment(request)

    assert exc_info.value.status_code == 400
    with session_factory() as db:
        assert db.execute(select(Payment.status)).scalar_one() == "failed"


async def test_provider_decline_marks_failed(orchestrator, provider_stub, session_factory, make_order, order_status):
    make_order("order-1")
    provider_stub.add(
        "POST",
        "mtn.test",
        "/v1/collection",
        status_code=400,
        body={"code": "INSUFFICIENT_FUNDS", "message": "no money"},
    )

    with pytest.raises(ProviderDeclinedError):
        await orchestrator.process_payment(mtn_request())

    with session_factory() as db:
        payment = db.execute(select(Payment)).scalar_one()
    assert payment.status == "failed"
    assert payment.error_message == "Insufficient funds on the Mobile Money account"
    assert order_status("order-1") == "failed"


async def test_ambiguous_timeout_stays_initiated(orchestrator, provider_stub, session_factory):
    provider_stub.add("POST", "mtn.test", "/v1/collection", exc=httpx.ReadTimeout)

    with pytest.raises(ProviderUnavailableError):
        await orchestrator.process_payment(mtn_request())

    with session_factory() as db:
        payment = db.execute(select(Payment)).scalar_one()
    assert payment.status == "initiated"
    assert payment.error_message


async def test_card_payment_succeeds_immediately(orchestrator, stripe_api, session_factory):
    result = await succeeded_card_payment(orchestrator, stripe_api)

    assert result.success
    assert result.status == "succeeded"
    assert count_rows(session_factory, OutboxEvent) == 1


async def test_status_check_updates_and_mirrors_terminal(orchestrator, provider_stub, store, make_order, order_status):
    make_order("order-1")
    provider_stub.add("POST", "mtn.test", "/v1/collection", body={"status": "PENDING", "transaction_id": "tx1"})
    provider_stub.add("GET", "mtn.test", "/v1/transaction/tx1", body={"status": "SUCCESSFUL"})
    result = await orchestrator.process_payment(mtn_request())

    payment = await orchestrator.check_payment_status(result.payment_id)

    assert payment.status == "succeeded"
    assert payment.last_provider_status == "succeeded"
    assert order_status("order-1") == "succeeded"


async def test_status_check_on_terminal_payment_is_cached(orchestrator, stripe_api):
    result = await succeeded_card_payment(orchestrator, stripe_api)

    payment = await orchestrator.check_payment_status(result.payment_id)

    assert payment.status == "succeeded"
    stripe_api.v1.payment_intents.retrieve_async.assert_not_awaited()


async def test_status_check_unknown_payment(orchestrator):
    with pytest.raises(NotFoundError):
        await orchestrator.check_payment_status("missing")


async def test_full_refund(orchestrator, stripe_api, store):
    payment = await succeeded_card_payment(orchestrator, stripe_api)
    stripe_api.answer("refunds", "create_async", {"id": "re_1", "status": "succeeded"})

    refund = await orchestrator.process_refund(payment.payment_id, 5000, "damaged")

    assert refund.success
    assert refund.status == "succeeded"
    assert refund.refund_status == "fully_refunded"
    assert refund.total_refunded == 5000
    stored = store.get_refund_record(refund.refund_id)
    assert stored.status == "succeeded"
    assert stored.processor_reference == "re_1"
    assert stored.processed_at is not None

    with pytest.raises(ValidationError):
        await orchestrator.process_refund(payment.payment_id, 1000, "again")


async def test_partial_refunds_accumulate(orchestrator, stripe_api, store):
    payment = await succeeded_card_payment(orchestrator, stripe_api)
    stripe_api.answer("refunds", "create_async", {"id": "re_1", "status": "succeeded"})

    first = await orchestrator.process_refund(payment.payment_id, 2000, "partial")
    assert first.refund_status == "partially_refunded"

    with pytest.raises(ValidationError):
        await orchestrator.process_refund(payment.payment_id, 3001, "over the balance")

    second = await orchestrator.process_refund(payment.payment_id, None, "rest")
    assert second.amount == 3000
    assert second.refund_status == "fully_refunded"
    assert store.get_payment_record(payment.payment_id).total_refunded == 5000


async def test_refund_requires_succeeded_payment(orchestrator, provider_stub):
    provider_stub.add("POST", "mtn.test", "/v1/collection", body={"status": "PENDING", "transaction_id": "tx1"})
    result = await orchestrator.process_payment(mtn_request())

    with pytest.raises(ValidationError):
        await orchestrator.process_refund(result.payment_id, 1000, "too early")


async def test_refund_provider_failure_leaves_payment_untouched(orchestrator, stripe_api, store, session_factory):
    payment = await succeeded_card_payment(orchestrator, stripe_api)
    stripe_api.answer("refunds", "create_async", exc=stripe.APIConnectionError("down"))

    with pytest.raises(ProviderUnavailableError):
        await orchestrator.process_refund(payment.payment_id, 5000, "damaged")

    stored = store.get_payment_record(payment.payment_id)
    assert stored.total_refunded == 0
    assert stored.refund_reserved == 0
    assert stored.refund_status == "none"
    with session_factory() as db:
        refund = db.execute(select(PaymentRefund)).scalar_one()
    assert refund.status == "failed"


async def test_cash_refund_is_manual(orchestrator, store, provider_stub):
    request = PaymentRequest(order_id="order-1", amount=5000, payment_method="cash")
    result = await orchestrator.process_payment(request)
    # Cash is settled out of band by the courier.
    orchestrator.apply_status(result.payment_id, "succeeded", "cash_collected")

    refund = await orchestrator.process_refund(result.payment_id, 5000, "returned")

    assert refund.status == "manual-pending"
    assert refund.refund_status == "fully_refunded"
    assert provider_stub.requests == []


def test_available_methods(orchestrator):
    methods = orchestrator.available_methods("SN", 5000, "XOF")

    assert methods["default_method"] == "cash"
    assert [method["id"] for method in methods["methods"]] == ["cash", "orange_money", "wave", "stripe"]


async def test_failure_metric_carries_provider_error_code(orchestrator, provider_stub):
    labels = {"service": orchestrator.service_name, "method": "mtn_money", "error_code": "INSUFFICIENT_FUNDS"}
    before = REGISTRY.get_sample_value("payment_failure_total", labels) or 0.0
    provider_stub.add(
        "POST",
        "mtn.test",
        "/v1/collection",
        status_code=400,
        body={"code": "INSUFFICIENT_FUNDS", "message": "no money"},
    )

    with pytest.raises(ProviderDeclinedError):
        await orchestrator.process_payment(mtn_request())

    assert REGISTRY.get_sample_value("payment_failure_total", labels) == before + 1


async def test_second_payment_for_an_active_order_is_rejected(orchestrator, provider_stub, stripe_api, session_factory):
    await succeeded_card_payment(orchestrator, stripe_api)

    with pytest.raises(DuplicatePaymentError) as exc_info:
        await orchestrator.process_payment(mtn_request())

    assert exc_info.value.status_code == 409
    assert provider_stub.requests == []
    assert count_rows(session_factory, Payment) == 1


async def test_order_can_be_paid_again_after_a_failed_attempt(orchestrator, provider_stub, stripe_api):
    provider_stub.add(
        "POST",
        "mtn.test",
        "/v1/collection",
        status_code=400,
        body={"code": "INSUFFICIENT_FUNDS", "message": "no money"},
    )
    with pytest.raises(ProviderDeclinedError):
        await orchestrator.process_payment(mtn_request())

    result = await succeeded_card_payment(orchestrator, stripe_api)

    assert result.status == "succeeded"


async def test_order_can_be_paid_again_after_a_full_refund(orchestrator, stripe_api, session_factory):
    payment = await succeeded_card_payment(orchestrator, stripe_api)
    stripe_api.answer("refunds", "create_async", {"id": "re_1", "status": "succeeded"})
    await orchestrator.process_refund(payment.payment_id, None, "returned")

    again = await succeeded_card_payment(orchestrator, stripe_api)

    assert again.payment_id != payment.payment_id
    assert count_rows(session_factory, Payment) == 2


def test_active_order_index_rejects_a_racing_insert(store):
    store.create_payment_record({"order_id": "order-1", "amount": 5000, "payment_method": "cash"})

    with pytest.raises(DuplicatePaymentError):
        store.create_payment_record({"order_id": "order-1", "amount": 5000, "payment_method": "wave"})


async def test_concurrent_refunds_reach_the_provider_once(orchestrator, stripe_api, store):
    payment = await succeeded_card_payment(orchestrator, stripe_api)

    async def slow_refund(*args, **kwargs):
        await asyncio.sleep(0)
        return stripe.StripeObject.construct_from({"id": "re_1", "status": "succeeded"}, "sk_test_123")

    stripe_api.v1.refunds.create_async.side_effect = slow_refund

    results = await asyncio.gather(
        orchestrator.process_refund(payment.payment_id, 5000, "first"),
        orchestrator.process_refund(payment.payment_id, 5000, "second"),
        return_exceptions=True,
    )

    refunds = [result for result in results if not isinstance(result, Exception)]
    errors = [result for result in results if isinstance(result, Exception)]
    assert len(refunds) == 1
    assert refunds[0].refund_status == "fully_refunded"
    assert len(errors) == 1
    assert isinstance(errors[0], ValidationError)
    stripe_api.v1.refunds.create_async.assert_awaited_once()
    stored = store.get_payment_record(payment.payment_id)
    assert (stored.total_refunded, stored.refund_reserved) == (5000, 0)


async def test_pending_refund_holds_the_balance_without_counting(orchestrator, stripe_api, store):
    payment = await succeeded_card_payment(orchestrator, stripe_api)
    stripe_api.answer("refunds", "create_async", {"id": "re_1", "status": "pending"})

    refund = await orchestrator.process_refund(payment.payment_id, 3000, "damaged")

    assert refund.success
    assert refund.status == "pending"
    assert refund.total_refunded == 0
    assert refund.refund_status == "none"
    stored = store.get_payment_record(payment.payment_id)
    assert (stored.total_refunded, stored.refund_reserved) == (0, 3000)
    assert store.get_refund_record(refund.refund_id).processor_reference == "re_1"

    with pytest.raises(ValidationError):
        await orchestrator.process_refund(payment.payment_id, 2001, "over the held balance")


async def test_rejected_refund_releases_the_hold(orchestrator, stripe_api, store):
    payment = await succeeded_card_payment(orchestrator, stripe_api)
    stripe_api.answer("refunds", "create_async", {"id": "re_1", "status": "failed"})

    refund = await orchestrator.process_refund(payment.payment_id, 5000, "damaged")

    assert not refund.success
    assert refund.status == "failed"
    stored = store.get_payment_record(payment.payment_id)
    assert (stored.total_refunded, stored.refund_reserved, stored.refund_status) == (0, 0, "none")
