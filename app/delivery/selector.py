from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable

from sqlalchemy.orm import Session

from app.core.config import settings
from app.delivery.circuit_breaker import CLOSED, HALF_OPEN, OPEN, CircuitBreakerRegistry
from app.delivery.health import HealthMonitor
from app.delivery.providers import load_providers
from app.delivery.quota import QuotaLedger
from app.models.tables import EmailProvider
from app.util.time import now_utc


@dataclass(frozen=True)
class RankedProvider:
    provider: str
    state: str
    health_score: int
    priority: int
    # True when the provider may only be used as a single half-open probe.
    probe: bool = False


def _priority_for(cfg: EmailProvider, category: str | None) -> int:
    override = settings.CATEGORY_PROVIDER_PRIORITY.get(category or "")
    if not override:
        return cfg.priority
    if cfg.id in override:
        return override.index(cfg.id)
    return len(override) + cfg.priority


class ProviderSelector:
    def __init__(
        self,
        db: Session,
        *,
        breakers: CircuitBreakerRegistry,
        quota: QuotaLedger,
        health: HealthMonitor,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.db = db
        self.breakers = breakers
        self.quota = quota
        self.health = health
        self.clock = clock

    def _candidates(self, available: Iterable[str] | None) -> list[EmailProvider]:
        providers = load_providers(self.db)
        if available is not None:
            allowed = set(available)
            providers = [p for p in providers if p.id in allowed]
        return providers

    def rank(
        self,
        *,
        exclude_open_circuits: bool = True,
        category: str | None = None,
        available: Iterable[str] | None = None,
    ) -> list[RankedProvider]:
        """Order providers for the next send attempt.

        Closed breakers come first by health score, then providers that may
        take a half-open probe. Quota-exhausted providers are always left
        out; open breakers still cooling down are left out unless
        ``exclude_open_circuits`` is False (admin views).
        """

        now = self.clock()
        providers = self._candidates(available)
        states = self.breakers.all_states()

        closed: list[RankedProvider] = []
        probes: list[RankedProvider] = []
        cooling: list[RankedProvider] = []

        for cfg in providers:
            if self.quota.is_exhausted(cfg.id):
                continue
            breaker = states.get(cfg.id) or self.breakers.get_state(cfg.id)
            priority = _priority_for(cfg, category)

            if breaker.state == CLOSED:
                score = self.health.health_score(cfg.id, breaker=breaker)
                closed.append(RankedProvider(cfg.id, CLOSED, score, priority))
            elif breaker.probe_eligible(now, self.breakers.probe_timeout):
                probes.append(RankedProvider(cfg.id, breaker.state, 0, priority, probe=True))
            elif not exclude_open_circuits:
                cooling.append(RankedProvider(cfg.id, breaker.state, 0, priority))

        closed.sort(key=lambda r: (-r.health_score, r.priority))
        probes.sort(key=lambda r: r.priority)
        cooling.sort(key=lambda r: r.priority)
        return closed + probes + cooling

    def earliest_recovery(self, *, available: Iterable[str] | None = None) -> datetime | None:
        """Soonest moment any blocked provider could take traffic again."""
        now = self.clock()
        times: list[datetime] = []
        for cfg in self._candidates(available):
            quota_back = self.quota.recovery_time(cfg.id)
            breaker = self.breakers.get_state(cfg.id)
            if breaker.state == OPEN and breaker.next_retry_time:
                breaker_back = breaker.next_retry_time
            elif breaker.state == HALF_OPEN and breaker.probe_started_at:
                breaker_back = breaker.probe_started_at + self.breakers.probe_timeout
            else:
                breaker_back = now
            times.append(max(quota_back or now, breaker_back))
        return min(times) if times else None
