from __future__ import annotations

from tests.utils_delivery import Clock, fresh_db


def test_health_score_formula(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")

    from app.delivery.health import compute_health_score, status_label

    assert compute_health_score(
        total_requests=0, success_rate=0.0, average_latency_ms=0.0, circuit_state="closed", latency_ceiling_ms=5000
    ) == 100
    assert compute_health_score(
        total_requests=50, success_rate=1.0, average_latency_ms=100.0, circuit_state="open", latency_ceiling_ms=5000
    ) == 0
    # 0.7 * 0.9 + 0.3 * (1 - 2500/5000) = 0.78
    score = compute_health_score(
        total_requests=10, success_rate=0.9, average_latency_ms=2500.0, circuit_state="closed", latency_ceiling_ms=5000
    )
    assert score == 78
    assert status_label(score) == "degraded"
    assert status_label(80) == "healthy"
    assert status_label(49) == "down"


def _components(db, clock):
    from app.delivery.circuit_breaker import CircuitBreakerRegistry
    from app.delivery.health import HealthMonitor
    from app.delivery.providers import sync_providers
    from app.delivery.quota import QuotaLedger
    from app.delivery.selector import ProviderSelector

    sync_providers(db, now=clock())
    breakers = CircuitBreakerRegistry(db, clock=clock)
    quota = QuotaLedger(db, clock=clock)
    health = HealthMonitor(db, breakers=breakers, quota=quota, clock=clock)
    selector = ProviderSelector(db, breakers=breakers, quota=quota, health=health, clock=clock)
    return breakers, quota, health, selector


def test_snapshot_alerts_once_per_cooldown(monkeypatch):
    fresh_db(monkeypatch)

    from app.core.db import SessionLocal
    from app.models.tables import HealthEvent, ProviderMetrics

    clock = Clock()
    with SessionLocal() as db:
        _, _, health, _ = _components(db, clock)
        for _ in range(10):
            health.record("mailersend", success=False, latency_ms=6000)
        health.record("brevo", success=True, latency_ms=200)

        summary = {h.provider: h for h in health.snapshot()}
        assert summary["mailersend"].health_score == 0
        assert summary["mailersend"].status == "down"
        assert summary["brevo"].status == "healthy"
        assert summary["resend"].health_score == 100

        clock.advance(minutes=5)
        health.snapshot()

        crit = db.query(HealthEvent).filter(HealthEvent.event_type == "health_critical").all()
        assert len(crit) == 1
        assert crit[0].provider == "mailersend"

        m = db.query(ProviderMetrics).filter(ProviderMetrics.provider == "mailersend").one()
        assert m.total_requests == 10
        assert m.failure_count == 10
        assert m.health_score == 0

        clock.advance(hours=1, minutes=1)
        health.snapshot()
        crit = db.query(HealthEvent).filter(HealthEvent.event_type == "health_critical").all()
        assert len(crit) == 2


def test_selector_prefers_healthier_then_priority(monkeypatch):
    fresh_db(monkeypatch)

    from app.core.db import SessionLocal

    clock = Clock()
    with SessionLocal() as db:
        _, _, health, selector = _components(db, clock)

        assert [r.provider for r in selector.rank()] == ["brevo", "mailersend", "resend"]

        health.record("brevo", success=False, latency_ms=1000)
        assert [r.provider for r in selector.rank()] == ["mailersend", "resend", "brevo"]


def test_selector_category_priority_and_open_circuits(monkeypatch):
    fresh_db(monkeypatch)

    from app.core.db import SessionLocal

    clock = Clock()
    with SessionLocal() as db:
        breakers, _, _, selector = _components(db, clock)

        assert [r.provider for r in selector.rank(category="auth")] == ["resend", "brevo", "mailersend"]

        for _ in range(5):
            breakers.record_failure("resend")
        assert [r.provider for r in selector.rank(category="auth")] == ["brevo", "mailersend"]

        admin_view = selector.rank(category="auth", exclude_open_circuits=False)
        assert [r.provider for r in admin_view] == ["brevo", "mailersend", "resend"]
        assert admin_view[-1].state == "open"

        clock.advance(seconds=61)
        ranked = selector.rank(category="auth")
        assert ranked[-1].provider == "resend"
        assert ranked[-1].probe is True

        assert selector.earliest_recovery(available=["resend"]) == clock()
        assert [r.provider for r in selector.rank(available=["mailersend"])] == ["mailersend"]
