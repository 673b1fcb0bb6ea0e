from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from typing import Callable

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.delivery import events
from app.delivery.circuit_breaker import OPEN, BreakerSnapshot, CircuitBreakerRegistry
from app.delivery.providers import load_providers
from app.delivery.quota import QuotaLedger
from app.models.tables import ProviderMetrics
from app.util.ids import new_uuid
from app.util.time import now_utc, today_utc

log = logging.getLogger("delivery.health")

HEALTH_CRITICAL = 30
HEALTH_WARNING = 50
HEALTHY = 80

_SUCCESS_WEIGHT = 0.7
_LATENCY_WEIGHT = 0.3


def compute_health_score(
    *,
    total_requests: int,
    success_rate: float,
    average_latency_ms: float,
    circuit_state: str,
    latency_ceiling_ms: int,
) -> int:
    """0-100. Open breaker forces 0; a provider with no traffic today scores 100."""
    if circuit_state == OPEN:
        return 0
    if total_requests == 0:
        return 100
    latency_factor = max(0.0, 1.0 - average_latency_ms / float(latency_ceiling_ms))
    return int(round(100 * (_SUCCESS_WEIGHT * success_rate + _LATENCY_WEIGHT * latency_factor)))


def status_label(score: int) -> str:
    if score >= HEALTHY:
        return "healthy"
    if score >= HEALTH_WARNING:
        return "degraded"
    return "down"


@dataclass(frozen=True)
class ProviderHealth:
    provider: str
    priority: int
    circuit_state: str
    failures: int
    next_retry_time: datetime | None
    total_requests: int
    success_rate: float
    average_latency_ms: float
    health_score: int
    status: str
    quota_used: int
    daily_limit: int
    daily_remaining: int
    monthly_remaining: int

    def as_dict(self) -> dict:
        return asdict(self)


class HealthMonitor:
    def __init__(
        self,
        db: Session,
        *,
        breakers: CircuitBreakerRegistry | None = None,
        quota: QuotaLedger | None = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.db = db
        self.clock = clock
        self.breakers = breakers or CircuitBreakerRegistry(db, clock=clock)
        self.quota = quota or QuotaLedger(db, clock=clock)

    def _row(self, provider: str, day: date) -> ProviderMetrics | None:
        return (
            self.db.query(ProviderMetrics)
            .filter(ProviderMetrics.provider == provider, ProviderMetrics.date == day)
            .populate_existing()
            .one_or_none()
        )

    def _ensure_row(self, provider: str, day: date) -> None:
        if self._row(provider, day) is not None:
            return
        self.db.add(
            ProviderMetrics(
                id=new_uuid(),
                provider=provider,
                date=day,
                total_requests=0,
                success_count=0,
                failure_count=0,
                total_latency_ms=0,
                updated_at=self.clock(),
            )
        )
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()

    def record(self, provider: str, *, success: bool, latency_ms: int) -> None:
        now = self.clock()
        day = today_utc(now)
        self._ensure_row(provider, day)
        self.db.execute(
            update(ProviderMetrics)
            .where(ProviderMetrics.provider == provider, ProviderMetrics.date == day)
            .values(
                total_requests=ProviderMetrics.total_requests + 1,
                success_count=ProviderMetrics.success_count + (1 if success else 0),
                failure_count=ProviderMetrics.failure_count + (0 if success else 1),
                total_latency_ms=ProviderMetrics.total_latency_ms + max(0, int(latency_ms)),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    def metrics_for(self, provider: str, day: date | None = None) -> ProviderMetrics | None:
        return self._row(provider, day or today_utc(self.clock()))

    def health_score(self, provider: str, *, breaker: BreakerSnapshot | None = None) -> int:
        breaker = breaker or self.breakers.get_state(provider)
        m = self.metrics_for(provider)
        return compute_health_score(
            total_requests=m.total_requests if m else 0,
            success_rate=m.success_rate if m else 0.0,
            average_latency_ms=m.average_latency_ms if m else 0.0,
            circuit_state=breaker.state,
            latency_ceiling_ms=settings.HEALTH_LATENCY_CEILING_MS,
        )

    def summary(self) -> list[ProviderHealth]:
        out: list[ProviderHealth] = []
        states = self.breakers.all_states()
        for cfg in load_providers(self.db):
            breaker = states.get(cfg.id) or self.breakers.get_state(cfg.id)
            m = self.metrics_for(cfg.id)
            rem = self.quota.remaining(cfg.id)
            score = self.health_score(cfg.id, breaker=breaker)
            out.append(
                ProviderHealth(
                    provider=cfg.id,
                    priority=cfg.priority,
                    circuit_state=breaker.state,
                    failures=breaker.failures,
                    next_retry_time=breaker.next_retry_time,
                    total_requests=m.total_requests if m else 0,
                    success_rate=round(m.success_rate, 4) if m else 0.0,
                    average_latency_ms=round(m.average_latency_ms, 2) if m else 0.0,
                    health_score=score,
                    status=status_label(score),
                    quota_used=rem.sent_today,
                    daily_limit=rem.daily_limit,
                    daily_remaining=rem.daily,
                    monthly_remaining=rem.monthly,
                )
            )
        return out

    def snapshot(self) -> list[ProviderHealth]:
        """Persist today's score per provider and raise deduplicated alerts."""
        now = self.clock()
        day = today_utc(now)
        cooldown = timedelta(seconds=settings.HEALTH_ALERT_COOLDOWN_SECONDS)
        summary = self.summary()

        for h in summary:
            self._ensure_row(h.provider, day)
            self.db.execute(
                update(ProviderMetrics)
                .where(ProviderMetrics.provider == h.provider, ProviderMetrics.date == day)
                .values(health_score=h.health_score, scored_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )

            if h.health_score <= HEALTH_CRITICAL:
                event_type, severity = events.HEALTH_CRITICAL, "critical"
            elif h.health_score <= HEALTH_WARNING:
                event_type, severity = events.HEALTH_DEGRADED, "warning"
            else:
                continue

            if events.recent_event_exists(self.db, event_type=event_type, provider=h.provider, window=cooldown, now=now):
                continue
            events.record_event(
                self.db,
                event_type=event_type,
                severity=severity,
                provider=h.provider,
                message=f"{h.provider} health={h.health_score}/100 (circuit={h.circuit_state})",
                context={
                    "health_score": h.health_score,
                    "success_rate": h.success_rate,
                    "average_latency_ms": h.average_latency_ms,
                    "circuit_state": h.circuit_state,
                },
                now=now,
            )

        self.db.commit()
        return summary


def prune_metrics(db: Session, *, retention_days: int, now: datetime | None = None) -> int:
    cutoff = today_utc(now) - timedelta(days=retention_days)
    res = db.execute(delete(ProviderMetrics).where(ProviderMetrics.date < cutoff))
    db.commit()
    return res.rowcount or 0
