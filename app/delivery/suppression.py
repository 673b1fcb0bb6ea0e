"""Recipients we must not mail: hard bounces, complaints, unsubscribes."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.tables import EmailSuppression
from app.util.time import now_utc

log = logging.getLogger("delivery.suppression")

REASONS = ("bounce", "complaint", "unsubscribe", "manual")


def _key(email: str) -> str:
    return (email or "").strip().lower()


def is_exempt(category: str) -> bool:
    return category in settings.SUPPRESSION_EXEMPT_CATEGORIES


def is_suppressed(db: Session, email: str) -> bool:
    return db.get(EmailSuppression, _key(email)) is not None


def add_suppression(
    db: Session,
    email: str,
    *,
    reason: str = "manual",
    notes: str | None = None,
    actor: str | None = None,
    now: datetime | None = None,
) -> EmailSuppression:
    """Idempotent: an address already on the list keeps its original entry."""
    if reason not in REASONS:
        raise ValueError(f"Unknown suppression reason: {reason}")

    key = _key(email)
    row = db.get(EmailSuppression, key)
    if row is not None:
        return row

    row = EmailSuppression(email=key, reason=reason, notes=notes, added_by=actor, created_at=now or now_utc())
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # Added concurrently by another request or a bounce webhook.
        db.rollback()
        return db.get(EmailSuppression, key)

    log.info("Suppressed %s reason=%s by=%s", key, reason, actor or "-")
    return row


def remove_suppression(db: Session, email: str) -> bool:
    res = db.execute(delete(EmailSuppression).where(EmailSuppression.email == _key(email)))
    db.commit()
    return (res.rowcount or 0) > 0


def list_suppressions(db: Session, *, reason: str | None = None, limit: int = 100) -> list[EmailSuppression]:
    q = db.query(EmailSuppression)
    if reason:
        q = q.filter(EmailSuppression.reason == reason)
    return q.order_by(EmailSuppression.created_at.desc()).limit(limit).all()


def serialize_suppression(s: EmailSuppression) -> dict:
    return {
        "email": s.email,
        "reason": s.reason,
        "notes": s.notes,
        "added_by": s.added_by,
        "created_at": s.created_at,
    }
