"""Payment orchestration.

Creates the payment record before any provider call, dispatches to the
selected adapter, maps whatever the provider answered onto the canonical
status vocabulary and persists it. Status checks and refunds go through the
same store so the synchronous path, polling and webhooks all agree.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any

from marketpay.common.config import CommonSettings, settings as default_settings
from marketpay.common.errors import (
    DuplicatePaymentError,
    InternalError,
    NotFoundError,
    PaymentError,
    ProviderUnavailableError,
    StateConflictError,
    ValidationError,
)
from marketpay.common.logging import bind_payment, logger
from marketpay.common.metrics import (
    payment_e2e_seconds,
    payment_failure_total,
    payment_success_total,
    refunds_total,
    state_conflicts_total,
)
from marketpay.common.state_machine import (
    CANCELLED,
    FAILED,
    PENDING_CASH,
    SUCCEEDED,
    can_transition,
    is_terminal,
    map_provider_status,
)
from marketpay.services.payments.models import Payment, PaymentRefund
from marketpay.services.payments.schemas import PaymentRequest, PaymentResult, RefundResult
from marketpay.services.payments.store import PaymentStore
from marketpay.services.providers.base import (
    PaymentInstruction,
    ProviderAdapter,
    ProviderPaymentResult,
    ProviderRefundResult,
)
from marketpay.services.providers.registry import (
    PaymentMethod,
    ProviderRegistry,
    default_method,
    is_card,
    is_mobile_money,
    list_available_methods,
)

MAX_CONFLICT_RETRIES = 3
CASH_INSTRUCTIONS = "Pay the courier in cash when your order is delivered"

REFUND_SUCCEEDED = "succeeded"
REFUND_PENDING = "pending"
MANUAL_PENDING = "manual-pending"
REFUND_MESSAGES = {
    REFUND_SUCCEEDED: "Refund processed",
    REFUND_PENDING: "Refund accepted, waiting for the provider to settle it",
    "failed": "Refund was rejected by the provider",
}


class PaymentOrchestrator:
    """Owns the payment state machine for the synchronous and reconciliation paths."""

    def __init__(
        self,
        store: PaymentStore,
        registry: ProviderRegistry,
        settings: CommonSettings = default_settings,
    ) -> None:
        self.store = store
        self.registry = registry
        self.settings = settings
        self.service_name = settings.service_name

    def _validate(self, request: PaymentRequest) -> None:
        minimum = self.settings.min_payment_amount
        if request.amount is None or request.amount < minimum:
            raise ValidationError(f"Minimum payment amount is {minimum} {request.currency.upper()}")
        if not request.payment_method:
            raise ValidationError("Payment method is required")
        if is_mobile_money(request.payment_method) and not request.customer_info.phone:
            raise ValidationError("Phone number is required for mobile money payments")
        if is_card(request.payment_method) and not request.customer_info.payment_method_id:
            raise ValidationError("A card payment method is required")

    def _callback_url(self, adapter: ProviderAdapter, payment: Payment) -> str:
        if is_card(payment.payment_method):
            return f"{self.settings.frontend_url}/payment/confirm?payment_id={payment.id}"
        return f"{self.settings.app_url}/webhooks/payments/{adapter.name}"

    def _observe_outcome(self, payment: Payment, error_code: str | None = None) -> None:
        if not is_terminal(payment.status):
            return
        if payment.status == SUCCEEDED:
            payment_success_total.labels(service=self.service_name, method=payment.payment_method).inc()
        else:
            payment_failure_total.labels(
                service=self.service_name,
                method=payment.payment_method,
                error_code=error_code or payment.status.upper(),
            ).inc()
        created_at = payment.created_at
        if created_at is None:
            return
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        elapsed = max(0.0, (datetime.now(timezone.utc) - created_at).total_seconds())
        payment_e2e_seconds.labels(service=self.service_name, terminal_state=payment.status).observe(elapsed)

    def apply_status(
        self,
        payment_id: str,
        new_status: str,
        reason: str,
        patch: dict[str, Any] | None = None,
        event_id: str | None = None,
        trace_id: str = "",
        source: str = "orchestrator",
        error_code: str | None = None,
    ) -> tuple[Payment | None, bool]:
        """Move a payment to `new_status` if the state machine still allows it.

        Re-reads and re-evaluates on an optimistic concurrency conflict.
        Returns the current record and whether this call changed it.
        `error_code` labels the failure metric when the move is terminal.
        """

        for _ in range(MAX_CONFLICT_RETRIES):
            payment = self.store.get_payment_record(payment_id)
            if payment is None:
                return None, False
            if payment.status == new_status or not can_transition(payment.status, new_status):
                return payment, False
            try:
                updated = self.store.transition_payment(
                    payment, new_status, reason, patch=patch, event_id=event_id, trace_id=trace_id
                )
            except StateConflictError:
                state_conflicts_total.labels(service=self.service_name, source=source).inc()
                logger.warning("payment_state_conflict payment_id=%s source=%s", payment_id, source)
                continue
            logger.info(
                "payment_status_changed payment_id=%s from=%s to=%s reason=%s",
                payment_id,
                payment.status,
                new_status,
                reason,
            )
            self._observe_outcome(updated, error_code)
            return updated, True
        raise StateConflictError(f"Payment {payment_id} is being updated concurrently, retry later")

    async def process_payment(self, request: PaymentRequest, trace_id: str = "") -> PaymentResult:
        """Create the payment record, charge through the selected provider and persist the outcome."""

        self._validate(request)
        method = request.payment_method
        active = self.store.find_active_payment(request.order_id)
        if active is not None:
            logger.warning(
                "payment_rejected_duplicate order_id=%s active_payment_id=%s status=%s",
                request.order_id,
                active.id,
                active.status,
            )
            raise DuplicatePaymentError(f"Order {request.order_id} already has a payment in status {active.status}")
        payment = self.store.create_payment_record(
            {
                "order_id": request.order_id,
                "amount": request.amount,
                "currency": request.currency,
                "payment_method": method,
                "customer_info": request.customer_info.model_dump(exclude_none=True),
                "metadata": request.metadata,
            }
        )
        bind_payment(payment)
        logger.info(
            "payment_initiated payment_id=%s order_id=%s method=%s amount=%s currency=%s",
            payment.id,
            payment.order_id,
            method,
            payment.amount,
            payment.currency,
        )

        try:
            if method == PaymentMethod.CASH.value:
                return self._process_cash(payment, trace_id)
            adapter = self.registry.select(method, payment.currency, request.customer_info.country)
            if adapter is None:
                raise ProviderUnavailableError(
                    "none", "UNSUPPORTED_METHOD", f"Unsupported payment method: {method}", status_code=400
                )
            customer = request.customer_info
            recipient = customer.phone if is_mobile_money(method) else customer.payment_method_id
            instruction = PaymentInstruction(
                amount=payment.amount,
                currency=payment.currency,
                recipient=recipient or "",
                order_id=payment.order_id,
                callback_url=self._callback_url(adapter, payment),
                metadata={**request.metadata, "payment_record_id": payment.id},
            )
            result = await adapter.pay(instruction)
            return self._apply_payment_result(payment, result, trace_id)
        except ProviderUnavailableError as exc:
            if not exc.ambiguous:
                self._mark_failed(payment, exc.message, trace_id, raw=exc.raw, error_code=exc.code)
                raise
            # The request may have reached the provider; a webhook settles it.
            logger.warning(
                "payment_outcome_unknown payment_id=%s provider=%s code=%s",
                payment.id,
                exc.provider,
                exc.code,
            )
            self.store.update_payment_record(
                payment.id, {"error_message": exc.message, "processor_response": {"error": exc.raw}}
            )
            raise
        except PaymentError as exc:
            self._mark_failed(payment, exc.message, trace_id, raw=getattr(exc, "raw", None), error_code=exc.code)
            raise
        except Exception as exc:
            logger.exception("payment_processing_error payment_id=%s error=%s", payment.id, exc)
            error = InternalError(detail=str(exc))
            self._mark_failed(payment, error.message, trace_id, error_code=error.code)
            raise error from exc

    def _process_cash(self, payment: Payment, trace_id: str) -> PaymentResult:
        reference = f"CASH_{payment.id}"
        updated, _ = self.apply_status(
            payment.id,
            PENDING_CASH,
            "cash_on_delivery",
            patch={
                "processor_reference": reference,
                "processor_response": {"type": "cash_on_delivery"},
                "last_provider_status": PENDING_CASH,
            },
            trace_id=trace_id,
            source="payment",
        )
        self.store.update_order_payment_status(payment.order_id, PENDING_CASH)
        return PaymentResult(
            success=True,
            payment_id=payment.id,
            order_id=payment.order_id,
            status=updated.status if updated else PENDING_CASH,
            processor_reference=reference,
            next_action={"type": "wait_for_delivery", "instructions": CASH_INSTRUCTIONS},
            verification_required=False,
            message="Cash on delivery registered",
        )

    def _apply_payment_result(self, payment: Payment, result: ProviderPaymentResult, trace_id: str) -> PaymentResult:
        status = map_provider_status(result.provider_status)
        patch: dict[str, Any] = {
            "processor_reference": result.provider_reference,
            "processor_response": result.raw_response,
            "last_provider_status": status,
        }
        if status == FAILED:
            patch["error_message"] = result.message or "Payment was declined by the provider"
        updated, applied = self.apply_status(
            payment.id, status, "provider_response", patch=patch, trace_id=trace_id, source="payment"
        )
        if not applied:
            # A webhook resolved the payment while the provider call was in flight.
            self.store.update_payment_record(
                payment.id,
                {"processor_reference": result.provider_reference, "processor_response": result.raw_response},
            )
            updated = self.store.get_payment_record(payment.id)
        self.store.update_order_payment_status(updated.order_id, updated.status)
        return PaymentResult(
            success=updated.status not in {FAILED, CANCELLED},
            payment_id=updated.id,
            order_id=updated.order_id,
            status=updated.status,
            processor_reference=result.provider_reference,
            next_action=result.next_action,
            verification_required=result.verification_required,
            message=result.message,
        )

    def _mark_failed(
        self,
        payment: Payment,
        message: str,
        trace_id: str,
        raw: Any = None,
        error_code: str = "UNKNOWN",
    ) -> None:
        patch: dict[str, Any] = {"error_message": message, "last_provider_status": FAILED}
        if raw is not None:
            patch["processor_response"] = raw if isinstance(raw, dict) else {"error": raw}
        updated, applied = self.apply_status(
            payment.id,
            FAILED,
            "provider_error",
            patch=patch,
            trace_id=trace_id,
            source="payment",
            error_code=error_code,
        )
        logger.error(
            "payment_failed payment_id=%s code=%s message=%s applied=%s",
            payment.id,
            error_code,
            message,
            applied,
        )
        if applied:
            self.store.update_order_payment_status(updated.order_id, FAILED)

    async def check_payment_status(self, payment_id: str, trace_id: str = "") -> Payment:
        """Return the payment, refreshing non-terminal provider payments from the provider."""

        payment = self.store.get_payment_record(payment_id)
        if payment is None:
            raise NotFoundError("Payment not found")
        bind_payment(payment)
        if is_terminal(payment.status) or payment.status == PENDING_CASH or not payment.processor_reference:
            return payment
        adapter = self.registry.select(payment.payment_method)
        if adapter is None:
            return payment

        result = await adapter.check_status(payment.processor_reference)
        status = map_provider_status(result.provider_status)
        if status == payment.status:
            return payment
        updated, applied = self.apply_status(
            payment.id,
            status,
            "status_poll",
            patch={"processor_response": result.raw_response, "last_provider_status": status},
            trace_id=trace_id,
            source="status_poll",
        )
        if applied and is_terminal(updated.status):
            self.store.update_order_payment_status(updated.order_id, updated.status)
        return updated or payment

    async def process_refund(
        self,
        payment_id: str,
        amount: int | None = None,
        reason: str = "Refund request",
        trace_id: str = "",
    ) -> RefundResult:
        """Refund all or part of a succeeded payment.

        The amount is reserved against the refundable balance before the
        provider is called. It only counts toward `total_refunded` once the
        provider reports the refund succeeded; a refund the provider leaves
        pending keeps its reservation until `reconcile_refund` settles it.
        """

        payment = self.store.get_payment_record(payment_id)
        if payment is None:
            raise NotFoundError("Payment not found")
        bind_payment(payment)
        payment, refund = self._reserve_refund(payment_id, amount, reason)
        logger.info(
            "refund_initiated payment_id=%s refund_id=%s amount=%s", payment.id, refund.id, refund.amount
        )

        if payment.payment_method == PaymentMethod.CASH.value:
            # Cash goes back through the courier; the balance is committed now.
            reference = f"REFUND_CASH_{refund.id}"
            payment = self.store.settle_refund(
                refund,
                {
                    "status": MANUAL_PENDING,
                    "processor_reference": reference,
                    "processor_response": {"type": "manual_cash_refund"},
                    "processed_at": datetime.now(timezone.utc),
                },
            )
            refunds_total.labels(method=payment.payment_method, status=MANUAL_PENDING).inc()
            return self._refund_result(
                payment, refund, MANUAL_PENDING, reference, "Cash refund requires manual processing"
            )

        adapter = self.registry.select(payment.payment_method)
        try:
            if adapter is None:
                raise ProviderUnavailableError(
                    "none",
                    "UNSUPPORTED_METHOD",
                    f"Unsupported payment method: {payment.payment_method}",
                    status_code=400,
                )
            result = await adapter.refund(
                payment.processor_reference or "",
                refund.amount,
                reason,
                currency=payment.currency,
                original_amount=payment.amount,
            )
        except PaymentError as exc:
            self._fail_refund(refund, exc.message)
            raise
        except Exception as exc:
            logger.exception("refund_processing_error refund_id=%s error=%s", refund.id, exc)
            error = InternalError("Refund could not be processed", detail=str(exc))
            self._fail_refund(refund, error.message)
            raise error from exc

        payment = self._record_refund_outcome(refund, result)
        return self._refund_result(
            payment,
            refund,
            result.provider_status,
            result.provider_reference,
            REFUND_MESSAGES.get(result.provider_status, REFUND_MESSAGES["failed"]),
        )

    async def reconcile_refund(self, refund: PaymentRefund) -> PaymentRefund:
        """Ask the provider about a pending refund and settle or release it."""

        payment = self.store.get_payment_record(refund.payment_id)
        if payment is None or not refund.processor_reference:
            return refund
        bind_payment(payment)
        adapter = self.registry.select(payment.payment_method)
        if adapter is None:
            return refund
        result = await adapter.check_refund_status(refund.processor_reference)
        if result.provider_status == REFUND_PENDING:
            return refund
        self._record_refund_outcome(refund, result)
        logger.info(
            "refund_reconciled payment_id=%s refund_id=%s status=%s",
            payment.id,
            refund.id,
            result.provider_status,
        )
        return self.store.get_refund_record(refund.id)

    @staticmethod
    def _refundable_amount(payment: Payment, amount: int | None) -> int:
        if payment.status != SUCCEEDED or payment.refund_status == "fully_refunded":
            raise ValidationError("This payment cannot be refunded")
        available = payment.amount - payment.total_refunded - payment.refund_reserved
        if available <= 0:
            raise ValidationError("This payment has no refundable balance left")
        refund_amount = available if amount is None else amount
        if refund_amount <= 0:
            raise ValidationError("Refund amount must be positive")
        if refund_amount > available:
            raise ValidationError(f"Refund amount cannot exceed the refundable balance of {available}")
        return refund_amount

    def _reserve_refund(self, payment_id: str, amount: int | None, reason: str) -> tuple[Payment, PaymentRefund]:
        for _ in range(MAX_CONFLICT_RETRIES):
            payment = self.store.get_payment_record(payment_id)
            refund_amount = self._refundable_amount(payment, amount)
            try:
                return payment, self.store.reserve_refund(payment, refund_amount, reason)
            except StateConflictError:
                state_conflicts_total.labels(service=self.service_name, source="refund").inc()
                logger.warning("refund_balance_conflict payment_id=%s", payment_id)
        raise StateConflictError(f"Payment {payment_id} is being refunded concurrently, retry later")

    def _record_refund_outcome(self, refund: PaymentRefund, result: ProviderRefundResult) -> Payment:
        status = result.provider_status
        patch: dict[str, Any] = {
            "status": status,
            "processor_reference": result.provider_reference or refund.processor_reference,
            "processor_response": result.raw_response,
        }
        if status == REFUND_SUCCEEDED:
            patch["processed_at"] = datetime.now(timezone.utc)
            payment = self.store.settle_refund(refund, patch)
        elif status == REFUND_PENDING:
            if not patch["processor_reference"]:
                logger.warning("refund_pending_without_reference refund_id=%s", refund.id)
            self.store.update_refund_record(refund.id, patch)
            payment = self.store.get_payment_record(refund.payment_id)
        else:
            patch.update(processed_at=datetime.now(timezone.utc), error_message=REFUND_MESSAGES["failed"])
            payment = self.store.release_refund(refund, patch)
        refunds_total.labels(method=payment.payment_method, status=status).inc()
        return payment

    def _fail_refund(self, refund: PaymentRefund, message: str) -> None:
        payment = self.store.release_refund(
            refund,
            {"status": "failed", "error_message": message, "processed_at": datetime.now(timezone.utc)},
        )
        refunds_total.labels(method=payment.payment_method, status="failed").inc()
        logger.error("refund_failed payment_id=%s refund_id=%s message=%s", payment.id, refund.id, message)

    @staticmethod
    def _refund_result(
        payment: Payment, refund: PaymentRefund, status: str, reference: str | None, message: str
    ) -> RefundResult:
        return RefundResult(
            success=status != "failed",
            refund_id=refund.id,
            payment_id=payment.id,
            amount=refund.amount,
            status=status,
            processor_reference=reference,
            refund_status=payment.refund_status,
            total_refunded=payment.total_refunded,
            message=message,
        )

    def available_methods(self, country: str, amount: int, currency: str) -> dict[str, Any]:
        return {
            "country": country.upper(),
            "currency": currency.upper(),
            "amount": amount,
            "default_method": default_method(country),
            "methods": list_available_methods(country, amount, currency),
        }

    async def provider_health(self) -> list[dict[str, Any]]:
        return list(await asyncio.gather(*(adapter.health_check() for adapter in self.registry.all())))
