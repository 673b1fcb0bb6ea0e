"""Durable delivery queue (``email_queue``).

Lifecycle: queued -> processing -> completed | queued (retry later) | failed.
Claims are exclusive: PostgreSQL narrows candidates with
``FOR UPDATE SKIP LOCKED`` and every claim is a compare-and-swap on status,
so two workers never process the same item on any backend.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from pydantic import ValidationError
from sqlalchemy import delete, func, or_, update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.db import supports_skip_locked
from app.delivery import events
from app.delivery.errors import EnqueueError
from app.models.tables import DeadLetterItem, QueueItem
from app.schemas.delivery import EnqueueRequest
from app.util.ids import new_uuid
from app.util.time import now_utc

log = logging.getLogger("delivery.queue")

QUEUED = "queued"
PROCESSING = "processing"
FAILED = "failed"
COMPLETED = "completed"


def backoff_delay(attempts: int, schedule: list[int] | None = None) -> timedelta:
    """Attempt-indexed retry delay: 1 -> 15m, 2 -> 30m, 3+ -> 60m by default."""
    schedule = schedule or settings.RETRY_BACKOFF_MINUTES
    idx = min(max(attempts, 1), len(schedule)) - 1
    return timedelta(minutes=schedule[idx])


def enqueue(
    db: Session,
    *,
    recipient_email: str,
    category: str,
    template: str,
    payload: dict | None = None,
    recipient_id: str | None = None,
    max_attempts: int | None = None,
    now: datetime | None = None,
) -> QueueItem:
    """The single entry point for producers. Bad input raises EnqueueError."""

    try:
        req = EnqueueRequest(
            recipient_email=recipient_email,
            recipient_id=recipient_id,
            category=category,
            template=template,
            payload=payload or {},
            max_attempts=max_attempts,
        )
    except ValidationError as e:
        errors = e.errors(include_url=False, include_context=False, include_input=False)
        raise EnqueueError("Invalid enqueue request", errors=errors) from e

    now = now or now_utc()
    item = QueueItem(
        id=new_uuid(),
        recipient_email=req.recipient_email,
        recipient_id=req.recipient_id,
        category=req.category,
        template=req.template,
        payload=req.payload,
        status=QUEUED,
        attempts=0,
        max_attempts=req.max_attempts or settings.DEFAULT_MAX_ATTEMPTS,
        last_error=None,
        next_retry_at=now,
        providers_tried=[],
        meta={},
        created_at=now,
        updated_at=now,
    )
    db.add(item)
    db.commit()
    log.info("Enqueued %s category=%s template=%s", item.id, item.category, item.template)
    return item


def claim_batch(db: Session, *, limit: int, worker: str, now: datetime | None = None) -> list[QueueItem]:
    now = now or now_utc()
    q = (
        db.query(QueueItem.id)
        .filter(QueueItem.status == QUEUED, or_(QueueItem.next_retry_at.is_(None), QueueItem.next_retry_at <= now))
        .order_by(QueueItem.created_at.asc())
        .limit(limit)
    )
    if supports_skip_locked(db):
        q = q.with_for_update(skip_locked=True)
    candidate_ids = [row.id for row in q.all()]

    claimed: list[str] = []
    for item_id in candidate_ids:
        res = db.execute(
            update(QueueItem)
            .where(QueueItem.id == item_id, QueueItem.status == QUEUED)
            .values(
                status=PROCESSING,
                attempts=QueueItem.attempts + 1,
                claimed_by=worker,
                claimed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 1:
            claimed.append(item_id)
    db.commit()

    if not claimed:
        return []
    return (
        db.query(QueueItem)
        .filter(QueueItem.id.in_(claimed))
        .order_by(QueueItem.created_at.asc())
        .populate_existing()
        .all()
    )


def complete(
    db: Session, item: QueueItem, *, provider: str, provider_message_id: str | None, now: datetime | None = None
) -> None:
    now = now or now_utc()
    meta = dict(item.meta or {})
    meta["delivered_by"] = provider
    if provider_message_id:
        meta["provider_message_id"] = provider_message_id
    item.meta = meta
    item.status = COMPLETED
    item.last_error = None
    item.next_retry_at = None
    item.claimed_by = None
    item.completed_at = now
    item.updated_at = now
    db.commit()


def complete_suppressed(db: Session, item: QueueItem, *, now: datetime | None = None) -> None:
    """Retire an item addressed to a suppressed recipient; nothing was sent, so the attempt is refunded."""
    now = now or now_utc()
    item.meta = {**(item.meta or {}), "suppressed": True}
    item.status = COMPLETED
    item.attempts = max(0, item.attempts - 1)
    item.last_error = None
    item.next_retry_at = None
    item.claimed_by = None
    item.completed_at = now
    item.updated_at = now
    db.commit()
    log.info("Skipped %s: recipient is suppressed", item.id)


def reschedule(db: Session, item: QueueItem, *, error: str, now: datetime | None = None) -> datetime:
    now = now or now_utc()
    item.status = QUEUED
    item.last_error = error
    item.next_retry_at = now + backoff_delay(item.attempts)
    item.claimed_by = None
    item.claimed_at = None
    item.updated_at = now
    db.commit()
    return item.next_retry_at


def defer(db: Session, item: QueueItem, *, until: datetime, reason: str, now: datetime | None = None) -> None:
    """Put an item back without charging it an attempt (no provider could be tried)."""
    now = now or now_utc()
    item.status = QUEUED
    item.attempts = max(0, item.attempts - 1)
    item.last_error = reason
    item.next_retry_at = until
    item.claimed_by = None
    item.claimed_at = None
    item.updated_at = now
    db.commit()


def supersede(db: Session, item_id: str, *, reason: str = "superseded", now: datetime | None = None) -> bool:
    """Retire a queued item whose content changed; it stays on record as completed."""
    now = now or now_utc()
    item = db.get(QueueItem, item_id)
    if item is None or item.status != QUEUED:
        return False

    res = db.execute(
        update(QueueItem)
        .where(QueueItem.id == item_id, QueueItem.status == QUEUED)
        .values(
            status=COMPLETED,
            next_retry_at=None,
            completed_at=now,
            updated_at=now,
            meta={**(item.meta or {}), "superseded": True, "superseded_reason": reason},
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return res.rowcount == 1


def reclaim_stale(db: Session, *, stale_after: timedelta | None = None, now: datetime | None = None) -> int:
    """Hand abandoned claims (worker died mid-send) back to the queue.

    A claim already charged its attempt, so an abandoned item with no budget
    left is dead-lettered as ``abandoned_claim`` instead of requeued.
    """
    from app.delivery.dead_letter import move_to_dead_letter

    now = now or now_utc()
    cutoff = now - (stale_after or timedelta(seconds=settings.STALE_CLAIM_SECONDS))
    stale = QueueItem.status == PROCESSING, QueueItem.claimed_at < cutoff

    spent_ids = [
        row.id for row in db.query(QueueItem.id).filter(*stale, QueueItem.attempts >= QueueItem.max_attempts).all()
    ]
    dead_lettered = 0
    for item_id in spent_ids:
        res = db.execute(
            update(QueueItem)
            .where(QueueItem.id == item_id, *stale)
            .values(status=FAILED, claimed_by=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            continue
        item = db.get(QueueItem, item_id, populate_existing=True)
        move_to_dead_letter(db, item, reason=f"abandoned_claim: no result after {item.attempts} attempts", now=now)
        dead_lettered += 1

    res = db.execute(
        update(QueueItem)
        .where(*stale, QueueItem.attempts < QueueItem.max_attempts)
        .values(status=QUEUED, claimed_by=None, claimed_at=None, next_retry_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    requeued = res.rowcount or 0
    count = requeued + dead_lettered
    if count:
        events.record_event(
            db,
            event_type=events.QUEUE_RECLAIMED,
            severity="warning",
            message=f"Reclaimed {count} stale queue item(s)",
            context={"count": count, "requeued": requeued, "dead_lettered": dead_lettered, "cutoff": cutoff.isoformat()},
            now=now,
        )
    db.commit()
    return count


def purge_completed(db: Session, *, retention_days: int | None = None, now: datetime | None = None) -> int:
    now = now or now_utc()
    cutoff = now - timedelta(days=retention_days or settings.COMPLETED_RETENTION_DAYS)
    res = db.execute(delete(QueueItem).where(QueueItem.status == COMPLETED, QueueItem.completed_at < cutoff))
    db.commit()
    return res.rowcount or 0


def list_items(db: Session, *, status: str | None = None, limit: int = 100) -> list[QueueItem]:
    q = db.query(QueueItem)
    if status:
        q = q.filter(QueueItem.status == status)
    return q.order_by(QueueItem.created_at.desc()).limit(limit).all()


def queue_stats(db: Session) -> dict:
    counts = dict(db.query(QueueItem.status, func.count(QueueItem.id)).group_by(QueueItem.status).all())
    dead = db.query(func.count(DeadLetterItem.id)).scalar() or 0
    return {
        QUEUED: counts.get(QUEUED, 0),
        PROCESSING: counts.get(PROCESSING, 0),
        FAILED: counts.get(FAILED, 0),
        COMPLETED: counts.get(COMPLETED, 0),
        "dead_letter": dead,
    }


def serialize_item(m: QueueItem) -> dict:
    return {
        "id": m.id,
        "recipient_email": m.recipient_email,
        "recipient_id": m.recipient_id,
        "category": m.category,
        "template": m.template,
        "status": m.status,
        "attempts": m.attempts,
        "max_attempts": m.max_attempts,
        "last_error": m.last_error,
        "next_retry_at": m.next_retry_at,
        "providers_tried": m.providers_tried,
        "meta": m.meta,
        "created_at": m.created_at,
        "completed_at": m.completed_at,
    }
