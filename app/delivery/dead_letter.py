from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import delete, func, update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.delivery import events
from app.delivery.errors import ConflictError, NotFoundError
from app.delivery.queue import FAILED, QUEUED
from app.models.tables import DeadLetterItem, QueueItem
from app.util.ids import new_uuid
from app.util.time import as_utc, now_utc

log = logging.getLogger("delivery.dead_letter")


def move_to_dead_letter(db: Session, item: QueueItem, *, reason: str, now: datetime | None = None) -> DeadLetterItem:
    now = now or now_utc()
    item.status = FAILED
    item.last_error = reason
    item.next_retry_at = None
    item.claimed_by = None
    item.updated_at = now

    dead = DeadLetterItem(
        id=new_uuid(),
        queue_item_id=item.id,
        recipient_email=item.recipient_email,
        recipient_id=item.recipient_id,
        category=item.category,
        template=item.template,
        payload=dict(item.payload or {}),
        providers_tried=list(item.providers_tried or []),
        failure_reason=reason,
        attempts=item.attempts,
        original_created_at=item.created_at,
        moved_at=now,
        reviewed_at=None,
        reviewed_by=None,
        retry_queue_item_id=None,
    )
    db.add(dead)
    db.commit()
    log.warning("Queue item %s dead-lettered after %s attempts: %s", item.id, item.attempts, reason)
    return dead


def get_dead_letter(db: Session, dead_id: str) -> DeadLetterItem:
    dead = db.get(DeadLetterItem, dead_id)
    if dead is None:
        raise NotFoundError(f"Dead letter item not found: {dead_id}")
    return dead


def list_dead_letters(db: Session, *, reviewed: bool | None = False, limit: int = 100) -> list[DeadLetterItem]:
    q = db.query(DeadLetterItem)
    if reviewed is True:
        q = q.filter(DeadLetterItem.reviewed_at.is_not(None))
    elif reviewed is False:
        q = q.filter(DeadLetterItem.reviewed_at.is_(None))
    return q.order_by(DeadLetterItem.moved_at.desc()).limit(limit).all()


def retry_dead_letter(db: Session, dead_id: str, *, actor: str, now: datetime | None = None) -> QueueItem:
    """Re-enqueue the original message as a fresh item with a full attempt budget.

    A dead letter is retried at most once; a second call raises ConflictError.
    """
    now = now or now_utc()
    dead = get_dead_letter(db, dead_id)
    item_id = new_uuid()

    res = db.execute(
        update(DeadLetterItem)
        .where(DeadLetterItem.id == dead_id, DeadLetterItem.retry_queue_item_id.is_(None))
        .values(
            retry_queue_item_id=item_id,
            reviewed_at=func.coalesce(DeadLetterItem.reviewed_at, now),
            reviewed_by=func.coalesce(DeadLetterItem.reviewed_by, actor),
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        db.rollback()
        db.refresh(dead)
        raise ConflictError(f"Dead letter {dead_id} was already retried as {dead.retry_queue_item_id}")

    item = QueueItem(
        id=item_id,
        recipient_email=dead.recipient_email,
        recipient_id=dead.recipient_id,
        category=dead.category,
        template=dead.template,
        payload=dict(dead.payload or {}),
        status=QUEUED,
        attempts=0,
        max_attempts=settings.DEFAULT_MAX_ATTEMPTS,
        last_error=None,
        next_retry_at=now,
        providers_tried=[],
        meta={"retried_from_dead_letter": dead.id},
        created_at=now,
        updated_at=now,
    )
    db.add(item)

    events.record_event(
        db,
        event_type=events.DLQ_MANUAL_RETRY,
        severity="info",
        message=f"Dead letter {dead.id} re-enqueued as {item.id}",
        context={"dead_letter_id": dead.id, "queue_item_id": item.id, "actor": actor},
        now=now,
    )
    db.commit()
    return item


def mark_reviewed(db: Session, dead_id: str, *, actor: str, now: datetime | None = None) -> DeadLetterItem:
    dead = get_dead_letter(db, dead_id)
    if dead.reviewed_at is None:
        dead.reviewed_at = now or now_utc()
        dead.reviewed_by = actor
        db.commit()
    return dead


def purge_dead_letters(
    db: Session,
    *,
    actor: str,
    ids: list[str] | None = None,
    reviewed_before: datetime | None = None,
    now: datetime | None = None,
) -> int:
    """Explicit admin purge. Only reviewed items are ever deleted."""
    if not ids and reviewed_before is None:
        raise ValueError("purge needs ids or reviewed_before")

    stmt = delete(DeadLetterItem).where(DeadLetterItem.reviewed_at.is_not(None))
    if ids:
        stmt = stmt.where(DeadLetterItem.id.in_(ids))
    if reviewed_before is not None:
        stmt = stmt.where(DeadLetterItem.reviewed_at < reviewed_before)
    res = db.execute(stmt)
    count = res.rowcount or 0

    events.record_event(
        db,
        event_type=events.DLQ_PURGED,
        severity="info",
        message=f"Purged {count} dead letter item(s)",
        context={
            "actor": actor,
            "count": count,
            "ids": ids or [],
            "reviewed_before": reviewed_before.isoformat() if reviewed_before else None,
        },
        now=now,
    )
    db.commit()
    return count


def review_alert(db: Session, *, older_than: timedelta | None = None, now: datetime | None = None) -> int:
    """Daily check: warn about unreviewed dead letters older than a day."""
    now = now or now_utc()
    cutoff = now - (older_than or timedelta(hours=settings.DLQ_REVIEW_AFTER_HOURS))

    stale = (
        db.query(DeadLetterItem)
        .filter(DeadLetterItem.reviewed_at.is_(None), DeadLetterItem.moved_at < cutoff)
        .order_by(DeadLetterItem.moved_at.asc())
        .all()
    )
    if not stale:
        return 0

    providers_failed = sorted({p for d in stale for p in (d.providers_tried or [])})
    oldest = as_utc(stale[0].moved_at)
    events.record_event(
        db,
        event_type=events.DLQ_REVIEW_NEEDED,
        severity="warning",
        message=f"Dead letter queue has {len(stale)} unreviewed email(s) older than {cutoff.isoformat()}",
        context={
            "count": len(stale),
            "oldest_moved_at": oldest.isoformat() if oldest else None,
            "providers_failed": providers_failed,
        },
        now=now,
    )
    db.commit()
    return len(stale)


def unreviewed_count(db: Session) -> int:
    return db.query(func.count(DeadLetterItem.id)).filter(DeadLetterItem.reviewed_at.is_(None)).scalar() or 0


def serialize_dead_letter(d: DeadLetterItem) -> dict:
    return {
        "id": d.id,
        "queue_item_id": d.queue_item_id,
        "recipient_email": d.recipient_email,
        "category": d.category,
        "template": d.template,
        "providers_tried": d.providers_tried,
        "failure_reason": d.failure_reason,
        "attempts": d.attempts,
        "original_created_at": d.original_created_at,
        "moved_at": d.moved_at,
        "reviewed_at": d.reviewed_at,
        "reviewed_by": d.reviewed_by,
        "retry_queue_item_id": d.retry_queue_item_id,
    }
