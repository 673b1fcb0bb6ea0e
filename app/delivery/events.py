"""Append-only event log for provider health and queue state transitions."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import delete
from sqlalchemy.orm import Session

from app.models.tables import HealthEvent
from app.util.ids import new_uuid
from app.util.time import now_utc

log = logging.getLogger("delivery.events")

CIRCUIT_OPENED = "circuit_opened"
CIRCUIT_HALF_OPENED = "circuit_half_opened"
CIRCUIT_CLOSED = "circuit_closed"
MANUAL_RESET = "manual_reset"
QUOTA_EXHAUSTED = "quota_exhausted"
PROVIDER_FAILURE = "provider_failure"
ALL_PROVIDERS_EXHAUSTED = "all_providers_exhausted"
HEALTH_DEGRADED = "health_degraded"
HEALTH_CRITICAL = "health_critical"
DLQ_REVIEW_NEEDED = "dlq_review_needed"
DLQ_MANUAL_RETRY = "dlq_manual_retry"
DLQ_PURGED = "dlq_purged"
QUEUE_RECLAIMED = "queue_reclaimed"

SEVERITIES = ("info", "warning", "error", "critical")

_LOG_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def record_event(
    db: Session,
    *,
    event_type: str,
    severity: str,
    message: str,
    provider: str | None = None,
    context: dict | None = None,
    now: datetime | None = None,
) -> HealthEvent:
    """Add an event row to the session. The caller owns the commit."""
    if severity not in SEVERITIES:
        raise ValueError(f"Unknown severity: {severity}")

    ev = HealthEvent(
        id=new_uuid(),
        provider=provider,
        event_type=event_type,
        severity=severity,
        message=message[:1000],
        context=context or {},
        created_at=now or now_utc(),
    )
    db.add(ev)
    log.log(_LOG_LEVELS[severity], "%s provider=%s: %s", event_type, provider or "-", message)
    return ev


def recent_event_exists(
    db: Session,
    *,
    event_type: str,
    window: timedelta,
    provider: str | None = None,
    now: datetime | None = None,
) -> bool:
    since = (now or now_utc()) - window
    q = db.query(HealthEvent.id).filter(HealthEvent.event_type == event_type, HealthEvent.created_at >= since)
    if provider is not None:
        q = q.filter(HealthEvent.provider == provider)
    return q.first() is not None


def list_events(
    db: Session,
    *,
    limit: int = 100,
    provider: str | None = None,
    event_type: str | None = None,
    severity: str | None = None,
    since: datetime | None = None,
) -> list[HealthEvent]:
    q = db.query(HealthEvent)
    if provider:
        q = q.filter(HealthEvent.provider == provider)
    if event_type:
        q = q.filter(HealthEvent.event_type == event_type)
    if severity:
        q = q.filter(HealthEvent.severity == severity)
    if since:
        q = q.filter(HealthEvent.created_at >= since)
    return q.order_by(HealthEvent.created_at.desc()).limit(limit).all()


def prune_events(db: Session, *, retention_days: int, now: datetime | None = None) -> int:
    cutoff = (now or now_utc()) - timedelta(days=retention_days)
    res = db.execute(delete(HealthEvent).where(HealthEvent.created_at < cutoff))
    db.commit()
    return res.rowcount or 0
