"""Per-provider circuit breakers persisted in ``email_circuit_breaker_state``.

State machine::

    closed --F consecutive failures--> open
    open --cool-down elapsed, probe acquired--> half_open
    half_open --S consecutive successes--> closed
    half_open --any failure--> open (fresh cool-down)

``open -> half_open`` is never written by a timer. A worker that finds the
cool-down elapsed calls :meth:`CircuitBreakerRegistry.try_acquire_probe`, a
compare-and-swap on the row's ``version``, so exactly one worker gets the
probe. Every other transition uses the same versioned update with a bounded
optimistic retry; there is one row per provider and no cross-row locking.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.delivery import events
from app.delivery.errors import DeliveryError, UnknownProviderError
from app.models.tables import CircuitBreakerState
from app.util.time import as_utc, now_utc

log = logging.getLogger("delivery.circuit_breaker")

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"

_MAX_CAS_RETRIES = 8


@dataclass(frozen=True)
class BreakerSnapshot:
    provider: str
    state: str
    failures: int
    consecutive_successes: int
    last_failure_time: datetime | None
    next_retry_time: datetime | None
    probe_started_at: datetime | None
    version: int

    def cooldown_elapsed(self, now: datetime) -> bool:
        return self.state == OPEN and self.next_retry_time is not None and now >= self.next_retry_time

    def probe_in_flight(self, now: datetime, probe_timeout: timedelta) -> bool:
        return self.probe_started_at is not None and now < self.probe_started_at + probe_timeout

    def probe_eligible(self, now: datetime, probe_timeout: timedelta) -> bool:
        if self.state == OPEN:
            return self.cooldown_elapsed(now)
        if self.state == HALF_OPEN:
            return not self.probe_in_flight(now, probe_timeout)
        return False

    def as_dict(self) -> dict:
        return {
            "provider": self.provider,
            "state": self.state,
            "failures": self.failures,
            "consecutive_successes": self.consecutive_successes,
            "last_failure_time": self.last_failure_time,
            "next_retry_time": self.next_retry_time,
        }


def _snapshot(row: CircuitBreakerState) -> BreakerSnapshot:
    return BreakerSnapshot(
        provider=row.provider,
        state=row.state,
        failures=row.failures,
        consecutive_successes=row.consecutive_successes,
        last_failure_time=as_utc(row.last_failure_time),
        next_retry_time=as_utc(row.next_retry_time),
        probe_started_at=as_utc(row.probe_started_at),
        version=row.version,
    )


@dataclass
class _Change:
    values: dict
    event: dict | None = None


class CircuitBreakerRegistry:
    def __init__(
        self,
        db: Session,
        *,
        failure_threshold: int | None = None,
        success_threshold: int | None = None,
        cooldown: timedelta | None = None,
        probe_timeout: timedelta | None = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.db = db
        self.failure_threshold = failure_threshold or settings.CIRCUIT_FAILURE_THRESHOLD
        self.success_threshold = success_threshold or settings.CIRCUIT_SUCCESS_THRESHOLD
        self.cooldown = cooldown or timedelta(seconds=settings.CIRCUIT_COOLDOWN_SECONDS)
        self.probe_timeout = probe_timeout or timedelta(seconds=settings.CIRCUIT_PROBE_TIMEOUT_SECONDS)
        self.clock = clock

    # -- reads -----------------------------------------------------------

    def _load(self, provider: str) -> CircuitBreakerState:
        row = (
            self.db.query(CircuitBreakerState)
            .filter(CircuitBreakerState.provider == provider)
            .populate_existing()
            .one_or_none()
        )
        if row is None:
            raise UnknownProviderError(f"No circuit breaker for provider={provider}")
        return row

    def get_state(self, provider: str) -> BreakerSnapshot:
        return _snapshot(self._load(provider))

    def all_states(self) -> dict[str, BreakerSnapshot]:
        rows = self.db.query(CircuitBreakerState).populate_existing().all()
        return {r.provider: _snapshot(r) for r in rows}

    # -- transitions -----------------------------------------------------

    def _mutate(self, provider: str, decide: Callable[[BreakerSnapshot, datetime], _Change | None]) -> tuple[bool, BreakerSnapshot]:
        for _ in range(_MAX_CAS_RETRIES):
            now = self.clock()
            snap = self.get_state(provider)
            change = decide(snap, now)
            if change is None:
                return False, snap

            res = self.db.execute(
                update(CircuitBreakerState)
                .where(CircuitBreakerState.provider == provider, CircuitBreakerState.version == snap.version)
                .values(**change.values, version=snap.version + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                # Lost the race; re-read and decide again.
                continue

            if change.event:
                events.record_event(self.db, provider=provider, now=now, **change.event)
            self.db.commit()
            return True, self.get_state(provider)

        raise DeliveryError(f"Circuit breaker update for {provider} kept losing races")

    def record_failure(self, provider: str, error_info: str | dict | None = None) -> BreakerSnapshot:
        error_ctx = error_info if isinstance(error_info, dict) else {"error": error_info}

        def decide(s: BreakerSnapshot, now: datetime) -> _Change:
            failures = s.failures + 1
            if s.state == HALF_OPEN:
                return _Change(
                    values=dict(
                        state=OPEN,
                        failures=failures,
                        consecutive_successes=0,
                        last_failure_time=now,
                        next_retry_time=now + self.cooldown,
                        probe_started_at=None,
                    ),
                    event=dict(
                        event_type=events.CIRCUIT_OPENED,
                        severity="error",
                        message=f"Circuit breaker re-opened for {provider}: probe failed",
                        context={"failures": failures, "from_state": HALF_OPEN, **error_ctx},
                    ),
                )
            if s.state == CLOSED and failures >= self.failure_threshold:
                return _Change(
                    values=dict(
                        state=OPEN,
                        failures=failures,
                        consecutive_successes=0,
                        last_failure_time=now,
                        next_retry_time=now + self.cooldown,
                        probe_started_at=None,
                    ),
                    event=dict(
                        event_type=events.CIRCUIT_OPENED,
                        severity="error",
                        message=f"Circuit breaker opened for {provider} after {failures} failures",
                        context={"failures": failures, "from_state": CLOSED, **error_ctx},
                    ),
                )
            # closed below threshold, or already open: count it, keep the cool-down as is.
            return _Change(values=dict(failures=failures, consecutive_successes=0, last_failure_time=now))

        _, snap = self._mutate(provider, decide)
        log.warning("Provider %s failure recorded (state=%s failures=%s): %s", provider, snap.state, snap.failures, error_ctx)
        return snap

    def record_success(self, provider: str) -> BreakerSnapshot:
        def decide(s: BreakerSnapshot, now: datetime) -> _Change | None:
            successes = s.consecutive_successes + 1
            if s.state == HALF_OPEN:
                if successes >= self.success_threshold:
                    return _Change(
                        values=dict(
                            state=CLOSED,
                            failures=0,
                            consecutive_successes=0,
                            last_failure_time=None,
                            next_retry_time=None,
                            probe_started_at=None,
                        ),
                        event=dict(
                            event_type=events.CIRCUIT_CLOSED,
                            severity="info",
                            message=f"Circuit breaker closed for {provider} after successful recovery",
                            context={"consecutive_successes": successes},
                        ),
                    )
                return _Change(values=dict(consecutive_successes=successes, probe_started_at=None))
            if s.state == CLOSED:
                return _Change(values=dict(failures=0, consecutive_successes=successes))
            # open: a send that started before the breaker tripped; the cool-down stands.
            return None

        _, snap = self._mutate(provider, decide)
        return snap

    def try_acquire_probe(self, provider: str) -> bool:
        """Claim the single half-open probe slot for ``provider``."""

        def decide(s: BreakerSnapshot, now: datetime) -> _Change | None:
            if s.state == OPEN and s.cooldown_elapsed(now):
                return _Change(
                    values=dict(state=HALF_OPEN, next_retry_time=None, probe_started_at=now, consecutive_successes=0),
                    event=dict(
                        event_type=events.CIRCUIT_HALF_OPENED,
                        severity="info",
                        message=f"Circuit breaker half-open for {provider}: probing",
                        context={"failures": s.failures},
                    ),
                )
            if s.state == HALF_OPEN and not s.probe_in_flight(now, self.probe_timeout):
                return _Change(values=dict(probe_started_at=now))
            return None

        acquired, _ = self._mutate(provider, decide)
        return acquired

    def release_probe(self, provider: str) -> None:
        """Give back a probe slot that was acquired but never used for a send."""

        def decide(s: BreakerSnapshot, now: datetime) -> _Change | None:
            if s.state == HALF_OPEN and s.probe_started_at is not None:
                return _Change(values=dict(probe_started_at=None))
            return None

        self._mutate(provider, decide)

    def reset(self, provider: str, *, actor: str) -> BreakerSnapshot:
        """Administrative override. Always paired with a ``manual_reset`` event."""

        def decide(s: BreakerSnapshot, now: datetime) -> _Change:
            return _Change(
                values=dict(
                    state=CLOSED,
                    failures=0,
                    consecutive_successes=0,
                    last_failure_time=None,
                    next_retry_time=None,
                    probe_started_at=None,
                ),
                event=dict(
                    event_type=events.MANUAL_RESET,
                    severity="info",
                    message=f"Circuit breaker manually reset for {provider}",
                    context={"reset_by": actor, "previous_state": s.state, "previous_failures": s.failures},
                ),
            )

        _, snap = self._mutate(provider, decide)
        return snap
