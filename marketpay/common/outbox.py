"""Transactional outbox publishing.

Status changes write an `outbox_events` row in the same transaction as the
payment update; `OutboxPublisher` ships those rows to Kafka afterwards, so a
notification is emitted once per applied transition and never for a replayed
webhook.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select, update

from marketpay.common.events import EventEnvelope, KafkaBus
from marketpay.common.logging import logger
from marketpay.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


def claim_outbox_batch(db, outbox_model, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
    """Claim pending (or stale processing) rows for publishing."""

    now = datetime.now(timezone.utc)
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    rows = (
        db.execute(
            select(outbox_model)
            .where(
                or_(
                    outbox_model.status == "PENDING",
                    (outbox_model.status == "PROCESSING") & (outbox_model.sent_at < stale_before),
                )
            )
            .order_by(outbox_model.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        .scalars()
        .all()
    )
    for row in rows:
        row.status = "PROCESSING"
        row.sent_at = now
    return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]


def mark_outbox_sent(db, outbox_model, event_id: str) -> None:
    db.execute(
        update(outbox_model)
        .where(outbox_model.id == event_id, outbox_model.status == "PROCESSING")
        .values(status="SENT", sent_at=datetime.now(timezone.utc))
    )


def requeue_outbox_event(db, outbox_model, event_id: str) -> None:
    """Return a claimed row to `PENDING` so the next cycle retries it."""

    db.execute(
        update(outbox_model)
        .where(outbox_model.id == event_id, outbox_model.status == "PROCESSING")
        .values(status="PENDING", sent_at=None)
    )


def update_outbox_backlog_metrics(db, outbox_model, service_name: str) -> None:
    """Update gauges for pending outbox depth and oldest pending age."""

    pending = outbox_model.status.in_(("PENDING", "PROCESSING"))
    pending_count = db.execute(select(func.count()).select_from(outbox_model).where(pending)).scalar_one()
    oldest_pending = db.execute(select(func.min(outbox_model.created_at)).where(pending)).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        if oldest_pending.tzinfo is None:
            oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
        age_seconds = max(0.0, (datetime.now(timezone.utc) - oldest_pending).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)


class OutboxPublisher:
    """Background loop draining one service's outbox table into Kafka."""

    def __init__(self, session_factory, outbox_model, service_name: str, bus: KafkaBus | None = None) -> None:
        self.session_factory = session_factory
        self.outbox_model = outbox_model
        self.service_name = service_name
        self.bus = bus or KafkaBus()

    async def publish_once(self, limit: int = 100) -> int:
        """Publish one claimed batch; returns how many rows were sent."""

        with self.session_factory() as db:
            rows = claim_outbox_batch(db, self.outbox_model, limit=limit)
            update_outbox_backlog_metrics(db, self.outbox_model, self.service_name)
            db.commit()
        sent = 0
        for row in rows:
            try:
                await self.bus.publish(row["topic"], EventEnvelope(**row["payload"]))
                with self.session_factory() as db:
                    mark_outbox_sent(db, self.outbox_model, row["id"])
                    db.commit()
                sent += 1
            except Exception as exc:
                logger.exception("outbox publish failed event_id=%s error=%s", row["id"], exc)
                with self.session_factory() as db:
                    requeue_outbox_event(db, self.outbox_model, row["id"])
                    db.commit()
        return sent

    async def run_forever(self, interval_seconds: float = 0.5) -> None:
        while True:
            try:
                await self.publish_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("outbox_loop_error error=%s", exc)
            await asyncio.sleep(interval_seconds)

    async def close(self) -> None:
        await self.bus.close()
