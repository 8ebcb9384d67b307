"""Transactional outbox helpers.

Rows are written in the caller's session and drained later by an async
publisher, so a slow or unavailable broker never blocks a checkout request.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, func, or_, select, update

from storepay.common.events import EventEnvelope
from storepay.common.logging import logger
from storepay.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


def enqueue_event(db, outbox_model, topic: str, aggregate_type: str, aggregate_id: str, trace_id: str, payload: dict):
    """Add one pending outbox row; the caller commits."""

    row = outbox_model(
        aggregate_type=aggregate_type,
        aggregate_id=aggregate_id,
        event_type=topic,
        topic=topic,
        payload=EventEnvelope(
            event_type=topic,
            aggregate_id=aggregate_id,
            trace_id=trace_id,
            payload=payload,
        ).model_dump(),
    )
    db.add(row)
    return row


def claim_outbox_batch(db, outbox_model, limit: int = 100, lease_seconds: int = 30) -> list[tuple[str, str, dict]]:
    """Lease up to `limit` publishable rows to the calling publisher.

    A row is publishable while `PENDING`, or while `PROCESSING` under a lease
    older than `lease_seconds` (its publisher died mid-send). Returns
    `(id, topic, payload)` tuples; the caller commits the lease.
    """

    now = datetime.now(timezone.utc)
    lease_expired = and_(
        outbox_model.status == "PROCESSING",
        outbox_model.sent_at < now - timedelta(seconds=lease_seconds),
    )
    rows = db.scalars(
        select(outbox_model)
        .where(or_(outbox_model.status == "PENDING", lease_expired))
        .order_by(outbox_model.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    ).all()
    for row in rows:
        row.status = "PROCESSING"
        row.sent_at = now
    db.flush()
    return [(row.id, row.topic, row.payload) for row in rows]


def finish_outbox_event(db, outbox_model, event_id: str, delivered: bool) -> bool:
    """Close a lease: `SENT` on delivery, back to `PENDING` otherwise.

    Only a row still under lease is touched, so a publisher whose lease was
    taken over cannot overwrite the new owner's outcome.
    """

    if delivered:
        values = {"status": "SENT", "sent_at": datetime.now(timezone.utc)}
    else:
        values = {"status": "PENDING", "sent_at": None}
    result = db.execute(
        update(outbox_model)
        .where(outbox_model.id == event_id, outbox_model.status == "PROCESSING")
        .values(**values)
    )
    return result.rowcount == 1


def update_outbox_backlog_metrics(db, outbox_model, service_name: str) -> None:
    """Publish the unsent backlog depth and the age of its oldest row."""

    backlog, oldest = db.execute(
        select(func.count(outbox_model.id), func.min(outbox_model.created_at)).where(
            outbox_model.status.in_(("PENDING", "PROCESSING"))
        )
    ).one()
    age_seconds = 0.0
    if oldest is not None:
        oldest = oldest if oldest.tzinfo else oldest.replace(tzinfo=timezone.utc)
        age_seconds = max(0.0, (datetime.now(timezone.utc) - oldest).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(backlog))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)


async def publish_outbox_forever(session_factory, outbox_model, bus, service_name: str, interval: float = 0.5) -> None:
    """Drain leased outbox rows to Kafka; failed sends are released for retry."""

    while True:
        with session_factory() as db:
            leased = claim_outbox_batch(db, outbox_model)
            update_outbox_backlog_metrics(db, outbox_model, service_name)
            db.commit()
        for event_id, topic, payload in leased:
            delivered = True
            try:
                await bus.publish(topic, EventEnvelope(**payload))
            except Exception as exc:
                delivered = False
                logger.exception("outbox_publish_failed event_id=%s topic=%s error=%s", event_id, topic, exc)
            with session_factory() as db:
                finish_outbox_event(db, outbox_model, event_id, delivered)
                db.commit()
        await asyncio.sleep(interval)
