from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.tables import CircuitBreakerState, EmailProvider
from app.util.time import now_utc

log = logging.getLogger("delivery.providers")

KNOWN_PROVIDERS = ("resend", "brevo", "mailersend")

_DEFAULT_DAILY_LIMIT = 100
_DEFAULT_MONTHLY_LIMIT = 3000


def sync_providers(db: Session, *, now: datetime | None = None) -> list[EmailProvider]:
    """Mirror provider config from settings into the database.

    Providers named in PROVIDER_PRIORITY are enabled and ranked by position;
    known providers missing from it are kept but disabled. Each provider also
    gets its circuit breaker row on first sight.
    """

    now = now or now_utc()
    order = [p for p in settings.PROVIDER_PRIORITY if p in KNOWN_PROVIDERS]
    for p in settings.PROVIDER_PRIORITY:
        if p not in KNOWN_PROVIDERS:
            log.warning("Ignoring unknown provider in PROVIDER_PRIORITY: %s", p)

    wanted = {}
    for idx, pid in enumerate(order):
        wanted[pid] = (idx, True)
    for pid in KNOWN_PROVIDERS:
        wanted.setdefault(pid, (len(order) + KNOWN_PROVIDERS.index(pid), False))

    for pid, (priority, enabled) in wanted.items():
        daily = settings.PROVIDER_DAILY_LIMITS.get(pid, _DEFAULT_DAILY_LIMIT)
        monthly = settings.PROVIDER_MONTHLY_LIMITS.get(pid, _DEFAULT_MONTHLY_LIMIT)

        row = db.get(EmailProvider, pid)
        if row is None:
            db.add(
                EmailProvider(
                    id=pid, priority=priority, daily_limit=daily, monthly_limit=monthly, enabled=enabled, updated_at=now
                )
            )
        elif (row.priority, row.daily_limit, row.monthly_limit, row.enabled) != (priority, daily, monthly, enabled):
            row.priority = priority
            row.daily_limit = daily
            row.monthly_limit = monthly
            row.enabled = enabled
            row.updated_at = now

        if db.get(CircuitBreakerState, pid) is None:
            db.add(
                CircuitBreakerState(
                    provider=pid,
                    state="closed",
                    failures=0,
                    consecutive_successes=0,
                    version=0,
                    updated_at=now,
                )
            )

    try:
        db.commit()
    except IntegrityError:
        # Another worker seeded the same rows concurrently.
        db.rollback()

    return load_providers(db)


def load_providers(db: Session, *, enabled_only: bool = True) -> list[EmailProvider]:
    q = db.query(EmailProvider)
    if enabled_only:
        q = q.filter(EmailProvider.enabled.is_(True))
    return q.order_by(EmailProvider.priority.asc()).all()
