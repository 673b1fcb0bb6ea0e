"""Per-provider sending quotas (one row per provider per UTC day).

Only today's row is ever incremented, so the sum of earlier days in the month
is frozen by the time we read it. That lets the whole daily + monthly check
and the increment be one conditional UPDATE on today's row; concurrent
workers serialize on that row and can never both take the last slot.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.delivery import events
from app.delivery.errors import UnknownProviderError
from app.models.tables import EmailProvider, QuotaRecord
from app.util.ids import new_uuid
from app.util.time import month_start, next_day_start, next_month_start, now_utc, today_utc

log = logging.getLogger("delivery.quota")


@dataclass(frozen=True)
class QuotaRemaining:
    provider: str
    sent_today: int
    sent_this_month: int
    daily_limit: int
    monthly_limit: int

    @property
    def daily(self) -> int:
        return max(0, self.daily_limit - self.sent_today)

    @property
    def monthly(self) -> int:
        return max(0, self.monthly_limit - self.sent_this_month)

    @property
    def exhausted(self) -> bool:
        return self.daily == 0 or self.monthly == 0


class QuotaLedger:
    def __init__(self, db: Session, *, clock: Callable[[], datetime] = now_utc):
        self.db = db
        self.clock = clock

    def _limits(self, provider: str) -> tuple[int, int]:
        cfg = self.db.get(EmailProvider, provider)
        if cfg is None:
            raise UnknownProviderError(f"Unknown provider: {provider}")
        return cfg.daily_limit, cfg.monthly_limit

    def _today_row(self, provider: str, day: date) -> QuotaRecord | None:
        return (
            self.db.query(QuotaRecord)
            .filter(QuotaRecord.provider == provider, QuotaRecord.date == day)
            .populate_existing()
            .one_or_none()
        )

    def _ensure_row(self, provider: str, day: date) -> None:
        daily, monthly = self._limits(provider)
        row = self._today_row(provider, day)
        if row is not None:
            if (row.daily_limit, row.monthly_limit) != (daily, monthly):
                row.daily_limit = daily
                row.monthly_limit = monthly
                self.db.commit()
            return

        self.db.add(
            QuotaRecord(
                id=new_uuid(),
                provider=provider,
                date=day,
                emails_sent=0,
                daily_limit=daily,
                monthly_limit=monthly,
                exhausted_at=None,
                created_at=self.clock(),
            )
        )
        try:
            self.db.commit()
        except IntegrityError:
            # Created concurrently by another worker.
            self.db.rollback()

    def _prior_month_sent(self, provider: str, day: date) -> int:
        total = (
            self.db.query(func.coalesce(func.sum(QuotaRecord.emails_sent), 0))
            .filter(
                QuotaRecord.provider == provider,
                QuotaRecord.date >= month_start(day),
                QuotaRecord.date < day,
            )
            .scalar()
        )
        return int(total or 0)

    def try_consume(self, provider: str) -> bool:
        """Take one send slot for today, or return False without touching anything."""
        day = today_utc(self.clock())
        self._ensure_row(provider, day)
        prior = self._prior_month_sent(provider, day)

        res = self.db.execute(
            update(QuotaRecord)
            .where(
                QuotaRecord.provider == provider,
                QuotaRecord.date == day,
                QuotaRecord.emails_sent < QuotaRecord.daily_limit,
                QuotaRecord.emails_sent + prior < QuotaRecord.monthly_limit,
            )
            .values(emails_sent=QuotaRecord.emails_sent + 1)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return res.rowcount == 1

    def remaining(self, provider: str) -> QuotaRemaining:
        day = today_utc(self.clock())
        daily, monthly = self._limits(provider)
        row = self._today_row(provider, day)
        sent_today = row.emails_sent if row else 0
        if row is not None:
            daily, monthly = row.daily_limit, row.monthly_limit
        return QuotaRemaining(
            provider=provider,
            sent_today=sent_today,
            sent_this_month=self._prior_month_sent(provider, day) + sent_today,
            daily_limit=daily,
            monthly_limit=monthly,
        )

    def is_exhausted(self, provider: str) -> bool:
        return self.remaining(provider).exhausted

    def mark_exhausted(self, provider: str) -> bool:
        """Stamp today's row; only the first caller of the day emits ``quota_exhausted``."""
        now = self.clock()
        day = today_utc(now)
        self._ensure_row(provider, day)

        res = self.db.execute(
            update(QuotaRecord)
            .where(QuotaRecord.provider == provider, QuotaRecord.date == day, QuotaRecord.exhausted_at.is_(None))
            .values(exhausted_at=now)
            .execution_options(synchronize_session=False)
        )
        first = res.rowcount == 1
        if first:
            rem = self.remaining(provider)
            scope = "monthly" if rem.monthly == 0 else "daily"
            events.record_event(
                self.db,
                event_type=events.QUOTA_EXHAUSTED,
                severity="warning",
                provider=provider,
                message=f"{scope.capitalize()} quota exhausted for {provider}",
                context={
                    "scope": scope,
                    "sent_today": rem.sent_today,
                    "daily_limit": rem.daily_limit,
                    "sent_this_month": rem.sent_this_month,
                    "monthly_limit": rem.monthly_limit,
                },
                now=now,
            )
        self.db.commit()
        return first

    def recovery_time(self, provider: str) -> datetime | None:
        """When an exhausted provider gets capacity back (None if it has some now)."""
        rem = self.remaining(provider)
        now = self.clock()
        if rem.monthly == 0:
            return next_month_start(now)
        if rem.daily == 0:
            return next_day_start(now)
        return None
