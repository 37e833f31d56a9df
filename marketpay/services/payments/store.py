"""Persistence gateway over the payment tables.

Every method opens its own session and commits before returning; returned ORM
objects are detached but stay readable (`expire_on_commit=False`). Status
changes go through `transition_payment`, which writes the payment row, its
timeline row and the outbox notification in one transaction.
"""

from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError

from marketpay.common.errors import DuplicatePaymentError, NotFoundError, StateConflictError, ValidationError
from marketpay.common.events import payment_event
from marketpay.common.logging import logger
from marketpay.common.state_machine import (
    INITIATED,
    PENDING_CASH,
    SUCCEEDED,
    TERMINAL_STATUSES,
    validate_transition,
)
from marketpay.services.payments.models import (
    ACTIVE_PAYMENT_CLAUSE,
    Order,
    OutboxEvent,
    Payment,
    PaymentRefund,
    PaymentTimeline,
    WebhookLog,
)

STATUS_CHANGED_TOPIC = "payments.status_changed"

# Columns callers may not touch through a plain patch; status moves only
# through `transition_payment` and identity/amount never change.
PROTECTED_PAYMENT_FIELDS = {
    "id",
    "order_id",
    "amount",
    "currency",
    "status",
    "state_version",
    "total_refunded",
    "refund_reserved",
    "created_at",
}


class PaymentStore:
    """Narrow read/write interface used by the orchestrator and the listener."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def create_payment_record(self, data: dict[str, Any]) -> Payment:
        """Insert a payment in `initiated` together with its first timeline row.

        Raises `DuplicatePaymentError` when the order already has an active
        payment; the partial unique index on `order_id` decides.
        """

        with self.session_factory() as db:
            payment = Payment(
                order_id=data["order_id"],
                amount=data["amount"],
                currency=data.get("currency", "XOF").upper(),
                payment_method=data["payment_method"],
                status=INITIATED,
                state_version=0,
                total_refunded=0,
                refund_reserved=0,
                refund_status="none",
                customer_info=data.get("customer_info") or {},
                payment_metadata=data.get("metadata") or {},
            )
            db.add(payment)
            try:
                db.flush()
            except IntegrityError as exc:
                db.rollback()
                raise DuplicatePaymentError(f"Order {data['order_id']} already has an active payment") from exc
            db.add(
                PaymentTimeline(
                    payment_id=payment.id,
                    from_state=None,
                    to_state=INITIATED,
                    reason="payment_created",
                )
            )
            db.commit()
            return payment

    def get_payment_record(self, payment_id: str) -> Payment | None:
        with self.session_factory() as db:
            return db.get(Payment, payment_id)

    def find_active_payment(self, order_id: str) -> Payment | None:
        with self.session_factory() as db:
            return db.execute(
                select(Payment).where(Payment.order_id == order_id, ACTIVE_PAYMENT_CLAUSE)
            ).scalars().first()

    def find_by_processor_reference(self, payment_method_names: set[str], processor_reference: str) -> Payment | None:
        with self.session_factory() as db:
            return db.execute(
                select(Payment).where(
                    Payment.processor_reference == processor_reference,
                    Payment.payment_method.in_(payment_method_names),
                )
            ).scalars().first()

    def update_payment_record(self, payment_id: str, patch: dict[str, Any]) -> None:
        """Write non-status fields (reference, raw response, error message)."""

        blocked = PROTECTED_PAYMENT_FIELDS.intersection(patch)
        if blocked:
            raise ValueError(f"fields cannot be patched directly: {sorted(blocked)}")
        values = self._payment_values(patch)
        values["updated_at"] = datetime.now(timezone.utc)
        with self.session_factory() as db:
            result = db.execute(update(Payment).where(Payment.id == payment_id).values(**values))
            if result.rowcount != 1:
                raise NotFoundError("Payment not found")
            db.commit()

    def transition_payment(
        self,
        payment: Payment,
        new_status: str,
        reason: str,
        patch: dict[str, Any] | None = None,
        event_id: str | None = None,
        trace_id: str = "",
    ) -> Payment:
        """Apply one validated status change with optimistic concurrency.

        The write is guarded by `(id, status, state_version)` as read by the
        caller; if another writer got there first `StateConflictError` is
        raised and nothing is written.
        """

        validate_transition(payment.status, new_status)
        from_status = payment.status
        current_version = payment.state_version
        values = self._payment_values(patch or {})
        values.update(
            status=new_status,
            state_version=current_version + 1,
            updated_at=datetime.now(timezone.utc),
        )

        with self.session_factory() as db:
            result = db.execute(
                update(Payment)
                .where(
                    Payment.id == payment.id,
                    Payment.status == from_status,
                    Payment.state_version == current_version,
                )
                .values(**values)
            )
            if result.rowcount != 1:
                db.rollback()
                raise StateConflictError(
                    f"optimistic concurrency conflict for payment {payment.id} "
                    f"(expected version {current_version})"
                )
            db.add(
                PaymentTimeline(
                    payment_id=payment.id,
                    from_state=from_status,
                    to_state=new_status,
                    reason=reason,
                    event_id=event_id,
                )
            )
            db.add(
                OutboxEvent(
                    aggregate_type="payment",
                    aggregate_id=payment.id,
                    event_type=STATUS_CHANGED_TOPIC,
                    topic=STATUS_CHANGED_TOPIC,
                    payload=payment_event(
                        STATUS_CHANGED_TOPIC,
                        payment.id,
                        trace_id,
                        order_id=payment.order_id,
                        from_status=from_status,
                        status=new_status,
                        payment_method=payment.payment_method,
                        amount=payment.amount,
                        currency=payment.currency,
                        reason=reason,
                    ).model_dump(),
                )
            )
            db.commit()
            return db.get(Payment, payment.id)

    def reserve_refund(self, payment: Payment, amount: int, reason: str | None = None) -> PaymentRefund:
        """Hold part of the refundable balance and record a pending refund.

        The hold is guarded by the refund columns as read by the caller, so of
        two concurrent refunds against the same balance only one reaches the
        provider; the other gets `StateConflictError`.
        """

        if amount > payment.amount - payment.total_refunded - payment.refund_reserved:
            raise ValidationError("Refund amount exceeds the refundable balance")
        with self.session_factory() as db:
            result = db.execute(
                update(Payment)
                .where(
                    Payment.id == payment.id,
                    Payment.status == SUCCEEDED,
                    Payment.total_refunded == payment.total_refunded,
                    Payment.refund_reserved == payment.refund_reserved,
                )
                .values(
                    refund_reserved=Payment.refund_reserved + amount,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            if result.rowcount != 1:
                db.rollback()
                raise StateConflictError(f"refund balance changed concurrently for payment {payment.id}")
            refund = PaymentRefund(
                payment_id=payment.id,
                amount=amount,
                reason=reason or "Refund request",
                status="pending",
            )
            db.add(refund)
            db.commit()
            return refund

    def settle_refund(self, refund: PaymentRefund, patch: dict[str, Any]) -> Payment:
        """Close a pending refund and move its hold into `total_refunded`."""

        with self.session_factory() as db:
            self._close_pending_refund(db, refund, patch)
            new_total = Payment.total_refunded + refund.amount
            db.execute(
                update(Payment)
                .where(Payment.id == refund.payment_id)
                .values(
                    refund_reserved=Payment.refund_reserved - refund.amount,
                    total_refunded=new_total,
                    refund_status=case(
                        (new_total >= Payment.amount, "fully_refunded"),
                        else_="partially_refunded",
                    ),
                    updated_at=datetime.now(timezone.utc),
                )
            )
            db.commit()
            return db.get(Payment, refund.payment_id)

    def release_refund(self, refund: PaymentRefund, patch: dict[str, Any]) -> Payment:
        """Close a pending refund that did not go through and free its hold."""

        with self.session_factory() as db:
            self._close_pending_refund(db, refund, patch)
            db.execute(
                update(Payment)
                .where(Payment.id == refund.payment_id)
                .values(
                    refund_reserved=Payment.refund_reserved - refund.amount,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            db.commit()
            return db.get(Payment, refund.payment_id)

    @staticmethod
    def _close_pending_refund(db, refund: PaymentRefund, patch: dict[str, Any]) -> None:
        result = db.execute(
            update(PaymentRefund)
            .where(PaymentRefund.id == refund.id, PaymentRefund.status == "pending")
            .values(**patch)
        )
        if result.rowcount != 1:
            db.rollback()
            raise StateConflictError(f"refund {refund.id} is no longer pending")

    def update_refund_record(self, refund_id: str, patch: dict[str, Any]) -> None:
        with self.session_factory() as db:
            result = db.execute(update(PaymentRefund).where(PaymentRefund.id == refund_id).values(**patch))
            if result.rowcount != 1:
                raise NotFoundError("Refund not found")
            db.commit()

    def get_refund_record(self, refund_id: str) -> PaymentRefund | None:
        with self.session_factory() as db:
            return db.get(PaymentRefund, refund_id)

    def list_pending_refunds(self, older_than_seconds: int, limit: int = 50) -> list[PaymentRefund]:
        """Provider-acknowledged refunds still waiting for a final answer."""

        cutoff = datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(PaymentRefund)
                    .where(
                        PaymentRefund.status == "pending",
                        PaymentRefund.processor_reference.is_not(None),
                        PaymentRefund.created_at < cutoff,
                    )
                    .order_by(PaymentRefund.created_at)
                    .limit(limit)
                ).scalars()
            )

    def update_order_payment_status(self, order_id: str, status: str) -> None:
        """Mirror a payment status onto the storefront order."""

        with self.session_factory() as db:
            result = db.execute(
                update(Order)
                .where(Order.id == order_id)
                .values(payment_status=status, updated_at=datetime.now(timezone.utc))
            )
            if result.rowcount != 1:
                logger.warning("order_missing_for_payment_status order_id=%s status=%s", order_id, status)
            db.commit()

    def record_webhook(
        self,
        provider: str,
        outcome: str,
        payload: dict[str, Any] | None = None,
        payment_id: str | None = None,
        provider_status: str | None = None,
        event_id: str | None = None,
    ) -> WebhookLog:
        with self.session_factory() as db:
            row = WebhookLog(
                provider=provider,
                outcome=outcome,
                payload=payload,
                payment_id=payment_id,
                provider_status=provider_status,
                event_id=event_id,
            )
            db.add(row)
            db.commit()
            return row

    def list_webhooks(self, payment_id: str) -> list[WebhookLog]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(WebhookLog).where(WebhookLog.payment_id == payment_id).order_by(WebhookLog.created_at)
                ).scalars()
            )

    def list_timeline(self, payment_id: str) -> list[PaymentTimeline]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(PaymentTimeline)
                    .where(PaymentTimeline.payment_id == payment_id)
                    .order_by(PaymentTimeline.created_at)
                ).scalars()
            )

    def list_reconcilable_payments(self, older_than_seconds: int, limit: int = 50) -> list[Payment]:
        """Non-terminal provider payments with a reference and no recent update."""

        cutoff = datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Payment)
                    .where(
                        Payment.status.not_in(TERMINAL_STATUSES | {PENDING_CASH}),
                        Payment.payment_method != "cash",
                        Payment.processor_reference.is_not(None),
                        Payment.updated_at < cutoff,
                    )
                    .order_by(Payment.updated_at)
                    .limit(limit)
                ).scalars()
            )

    @staticmethod
    def _payment_values(patch: dict[str, Any]) -> dict[str, Any]:
        values = dict(patch)
        if "metadata" in values:
            values["payment_metadata"] = values.pop("metadata")
        return values
