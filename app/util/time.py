from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def today_utc(now: datetime | None = None) -> date:
    return (now or now_utc()).astimezone(timezone.utc).date()


def month_start(day: date) -> date:
    return day.replace(day=1)


def next_day_start(now: datetime) -> datetime:
    return datetime.combine(today_utc(now) + timedelta(days=1), time.min, tzinfo=timezone.utc)


def next_month_start(now: datetime) -> datetime:
    first = month_start(today_utc(now))
    nxt = (first + timedelta(days=32)).replace(day=1)
    return datetime.combine(nxt, time.min, tzinfo=timezone.utc)
