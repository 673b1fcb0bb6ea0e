from __future__ import annotations

import threading

from tests.utils_delivery import Clock, fresh_db


def test_daily_limit_reached_blocks_consume_and_selection(monkeypatch):
    fresh_db(monkeypatch)

    from app.core.config import settings
    from app.core.db import SessionLocal
    from app.delivery.circuit_breaker import CircuitBreakerRegistry
    from app.delivery.health import HealthMonitor
    from app.delivery.providers import sync_providers
    from app.delivery.quota import QuotaLedger
    from app.delivery.selector import ProviderSelector
    from app.models.tables import HealthEvent

    monkeypatch.setitem(settings.PROVIDER_DAILY_LIMITS, "brevo", 2)

    clock = Clock()
    with SessionLocal() as db:
        sync_providers(db, now=clock())
        quota = QuotaLedger(db, clock=clock)

        assert quota.try_consume("brevo") is True
        assert quota.try_consume("brevo") is True
        assert quota.try_consume("brevo") is False

        rem = quota.remaining("brevo")
        assert rem.sent_today == 2
        assert rem.daily == 0
        assert rem.exhausted is True

        breakers = CircuitBreakerRegistry(db, clock=clock)
        selector = ProviderSelector(
            db, breakers=breakers, quota=quota, health=HealthMonitor(db, breakers=breakers, quota=quota, clock=clock), clock=clock
        )
        ranked = [r.provider for r in selector.rank()]
        assert "brevo" not in ranked
        assert ranked == ["mailersend", "resend"]

        assert quota.mark_exhausted("brevo") is True
        assert quota.mark_exhausted("brevo") is False
        evs = db.query(HealthEvent).filter(HealthEvent.event_type == "quota_exhausted").all()
        assert len(evs) == 1
        assert evs[0].context["scope"] == "daily"

        # A new UTC day brings the provider back.
        clock.advance(days=1)
        assert quota.is_exhausted("brevo") is False
        assert quota.try_consume("brevo") is True


def test_monthly_limit_counts_earlier_days(monkeypatch):
    fresh_db(monkeypatch)

    from app.core.config import settings
    from app.core.db import SessionLocal
    from app.delivery.providers import sync_providers
    from app.delivery.quota import QuotaLedger

    monkeypatch.setitem(settings.PROVIDER_DAILY_LIMITS, "resend", 2)
    monkeypatch.setitem(settings.PROVIDER_MONTHLY_LIMITS, "resend", 3)

    clock = Clock()
    with SessionLocal() as db:
        sync_providers(db, now=clock())
        quota = QuotaLedger(db, clock=clock)

        assert quota.try_consume("resend") is True
        assert quota.try_consume("resend") is True
        clock.advance(days=1)
        assert quota.try_consume("resend") is True
        assert quota.try_consume("resend") is False

        rem = quota.remaining("resend")
        assert rem.sent_this_month == 3
        assert rem.monthly == 0
        assert quota.recovery_time("resend").day == 1


def test_concurrent_consume_never_oversells(monkeypatch, tmp_path):
    fresh_db(monkeypatch)

    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker

    from app.delivery.quota import QuotaLedger
    from app.models.base import Base
    from app.models.tables import EmailProvider, QuotaRecord
    from app.util.ids import new_uuid
    from app.util.time import today_utc

    # A file database so every thread gets its own connection.
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'quota.db'}", connect_args={"timeout": 30})
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)

    clock = Clock()
    remaining = 7
    with Session() as db:
        db.add(EmailProvider(id="brevo", priority=0, daily_limit=remaining, monthly_limit=1000, enabled=True, updated_at=clock()))
        db.add(
            QuotaRecord(
                id=new_uuid(),
                provider="brevo",
                date=today_utc(clock()),
                emails_sent=0,
                daily_limit=remaining,
                monthly_limit=1000,
                created_at=clock(),
            )
        )
        db.commit()

    results: list[bool] = []
    lock = threading.Lock()
    start = threading.Barrier(6)

    def worker():
        with Session() as db:
            ledger = QuotaLedger(db, clock=clock)
            start.wait()
            for _ in range(3):
                ok = ledger.try_consume("brevo")
                with lock:
                    results.append(ok)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 18
    assert results.count(True) == remaining

    with Session() as db:
        row = db.query(QuotaRecord).filter(QuotaRecord.provider == "brevo").one()
        assert row.emails_sent == remaining
    engine.dispose()
