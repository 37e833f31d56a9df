"""Provider-driven reconciliation: signed webhooks and background polling.

Both paths map provider statuses through the same canonical table as the
synchronous payment path and write through `PaymentOrchestrator.apply_status`,
so a replayed or late signal never moves a payment backwards.
"""

import asyncio
import json
from collections.abc import Mapping
from typing import Any

from marketpay.common.errors import InvalidSignatureError, NotFoundError, PaymentError, ValidationError
from marketpay.common.logging import bind_payment, logger
from marketpay.common.metrics import webhooks_received_total
from marketpay.common.state_machine import is_terminal, map_provider_status
from marketpay.services.payments.models import Payment
from marketpay.services.payments.service import PaymentOrchestrator
from marketpay.services.providers.base import WebhookEvent
from marketpay.services.providers.registry import methods_for_provider

APPLIED = "applied"
DUPLICATE = "duplicate"
STALE = "stale"
UNKNOWN_PAYMENT = "unknown_payment"
MISMATCHED_PROVIDER = "mismatched_provider"
IGNORED = "ignored"
REJECTED = "rejected"


class ReconciliationListener:
    """Applies provider webhooks to stored payments."""

    def __init__(self, orchestrator: PaymentOrchestrator) -> None:
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.registry = orchestrator.registry

    def _record(
        self,
        provider: str,
        outcome: str,
        payload: dict[str, Any] | None = None,
        event: WebhookEvent | None = None,
        payment_id: str | None = None,
    ) -> None:
        webhooks_received_total.labels(provider=provider, outcome=outcome).inc()
        self.store.record_webhook(
            provider,
            outcome,
            payload=payload,
            payment_id=payment_id or (event.payment_id if event else None),
            provider_status=event.provider_status if event else None,
            event_id=event.event_id if event else None,
        )
        logger.info("webhook_processed provider=%s outcome=%s payment_id=%s", provider, outcome, payment_id)

    def _find_payment(self, provider: str, event: WebhookEvent) -> Payment | None:
        if event.payment_id:
            payment = self.store.get_payment_record(event.payment_id)
            if payment is not None:
                return payment
        if event.provider_reference:
            return self.store.find_by_processor_reference(methods_for_provider(provider), event.provider_reference)
        return None

    async def handle_webhook(
        self, provider: str, body: bytes, headers: Mapping[str, str], trace_id: str = ""
    ) -> dict[str, Any]:
        """Verify, parse and apply one webhook delivery.

        Signature failures raise `InvalidSignatureError`; every other
        outcome, including stale and duplicate deliveries, is acknowledged.
        """

        adapter = self.registry.get(provider)
        if adapter is None:
            raise NotFoundError(f"Unknown payment provider: {provider}")
        headers = {key.lower(): value for key, value in headers.items()}
        if not adapter.verify_webhook(body, headers):
            self._record(provider, REJECTED)
            logger.warning("webhook_signature_rejected provider=%s", provider)
            raise InvalidSignatureError("Invalid webhook signature")

        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise ValidationError("Webhook body is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object")

        event = adapter.parse_webhook(payload)
        if event is None:
            self._record(provider, IGNORED, payload)
            return {"received": True}

        payment = self._find_payment(provider, event)
        if payment is None:
            logger.warning(
                "webhook_unknown_payment provider=%s payment_id=%s reference=%s",
                provider,
                event.payment_id,
                event.provider_reference,
            )
            self._record(provider, UNKNOWN_PAYMENT, payload, event)
            return {"received": True}

        bind_payment(payment)
        if payment.payment_method not in methods_for_provider(provider):
            # A valid signature only vouches for payments this provider handles.
            logger.warning(
                "webhook_provider_mismatch provider=%s payment_id=%s payment_method=%s",
                provider,
                payment.id,
                payment.payment_method,
            )
            self._record(provider, MISMATCHED_PROVIDER, payload, event, payment_id=payment.id)
            return {"received": True}

        status = map_provider_status(event.provider_status)
        outcome = self._apply(provider, payment, status, event, payload, trace_id)
        self._record(provider, outcome, payload, event, payment_id=payment.id)
        return {"received": True}

    def _apply(
        self,
        provider: str,
        payment: Payment,
        status: str,
        event: WebhookEvent,
        payload: dict[str, Any],
        trace_id: str,
    ) -> str:
        if is_terminal(payment.status):
            return STALE
        if payment.status == status:
            return DUPLICATE
        patch: dict[str, Any] = {"processor_response": payload, "last_provider_status": status}
        if event.provider_reference and not payment.processor_reference:
            patch["processor_reference"] = event.provider_reference
        updated, applied = self.orchestrator.apply_status(
            payment.id,
            status,
            f"webhook:{provider}",
            patch=patch,
            event_id=event.event_id,
            trace_id=trace_id,
            source="webhook",
        )
        if not applied:
            # Re-evaluated after a concurrent write.
            return DUPLICATE if updated is not None and updated.status == status else STALE
        if is_terminal(updated.status):
            self.store.update_order_payment_status(updated.order_id, updated.status)
        return APPLIED


class PaymentReconciler:
    """Background poller for payments whose webhook never arrived.

    Each pass also asks providers about refunds they left pending, since
    refund outcomes have no webhook path.
    """

    def __init__(
        self,
        orchestrator: PaymentOrchestrator,
        interval_seconds: float = 60.0,
        older_than_seconds: int = 300,
        batch_size: int = 50,
    ) -> None:
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds
        self.older_than_seconds = older_than_seconds
        self.batch_size = batch_size

    async def reconcile_once(self) -> int:
        """Poll one batch of stale in-flight payments and pending refunds.

        Returns how many payments changed status plus how many refunds
        settled or failed.
        """

        changed = 0
        candidates = self.orchestrator.store.list_reconcilable_payments(self.older_than_seconds, self.batch_size)
        for payment in candidates:
            try:
                refreshed = await self.orchestrator.check_payment_status(payment.id)
            except PaymentError as exc:
                logger.warning(
                    "reconcile_check_failed payment_id=%s code=%s message=%s",
                    payment.id,
                    exc.code,
                    exc.message,
                )
                continue
            if refreshed.status != payment.status:
                changed += 1
        if candidates:
            logger.info("reconcile_batch checked=%s changed=%s", len(candidates), changed)
        return changed + await self.reconcile_refunds_once()

    async def reconcile_refunds_once(self) -> int:
        resolved = 0
        refunds = self.orchestrator.store.list_pending_refunds(self.older_than_seconds, self.batch_size)
        for refund in refunds:
            try:
                refreshed = await self.orchestrator.reconcile_refund(refund)
            except PaymentError as exc:
                logger.warning(
                    "reconcile_refund_failed refund_id=%s code=%s message=%s",
                    refund.id,
                    exc.code,
                    exc.message,
                )
                continue
            if refreshed.status != refund.status:
                resolved += 1
        if refunds:
            logger.info("reconcile_refund_batch checked=%s resolved=%s", len(refunds), resolved)
        return resolved

    async def run_forever(self) -> None:
        while True:
            try:
                await self.reconcile_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("reconcile_loop_error error=%s", exc)
            await asyncio.sleep(self.interval_seconds)
