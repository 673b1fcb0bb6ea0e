from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session

from app.core.config import settings
from app.delivery import events
from app.delivery.adapters.base import PERMANENT, TRANSIENT, EmailMessage, ProviderAdapter, SendResult
from app.delivery.circuit_breaker import CircuitBreakerRegistry
from app.delivery.dead_letter import move_to_dead_letter
from app.delivery.health import HealthMonitor
from app.delivery.providers import load_providers, sync_providers
from app.delivery.queue import (
    PROCESSING,
    backoff_delay,
    claim_batch,
    complete,
    complete_suppressed,
    defer,
    reclaim_stale,
    reschedule,
)
from app.delivery.quota import QuotaLedger
from app.delivery.rendering import RenderError, render_message
from app.delivery.selector import ProviderSelector, RankedProvider
from app.delivery.suppression import is_exempt, is_suppressed
from app.models.tables import QueueItem
from app.util.ids import worker_id
from app.util.time import now_utc

log = logging.getLogger("delivery.dispatcher")

COMPLETED = "completed"
RESCHEDULED = "rescheduled"
DEAD_LETTERED = "dead_lettered"
DEFERRED = "deferred"
SUPPRESSED = "suppressed"


@dataclass
class CycleResult:
    claimed: int = 0
    completed: int = 0
    rescheduled: int = 0
    dead_lettered: int = 0
    deferred: int = 0
    suppressed: int = 0
    errors: list[dict] = field(default_factory=list)

    def count(self, outcome: str | None) -> None:
        if outcome in (COMPLETED, RESCHEDULED, DEAD_LETTERED, DEFERRED, SUPPRESSED):
            setattr(self, outcome, getattr(self, outcome) + 1)

    def as_dict(self) -> dict:
        return asdict(self)


class Dispatcher:
    """One worker's view of the delivery loop.

    Several dispatchers may run at once (separate Celery workers); all shared
    state goes through the row-level atomic operations of the queue, quota
    ledger and breaker registry.
    """

    def __init__(
        self,
        db: Session,
        *,
        adapters: dict[str, ProviderAdapter],
        renderer: Callable[[QueueItem], EmailMessage] = render_message,
        clock: Callable[[], datetime] = now_utc,
        worker: str | None = None,
        batch_size: int | None = None,
    ):
        self.db = db
        self.adapters = adapters
        self.renderer = renderer
        self.clock = clock
        self.worker = worker or worker_id()
        self.batch_size = batch_size or settings.DISPATCH_BATCH_SIZE

        self.breakers = CircuitBreakerRegistry(db, clock=clock)
        self.quota = QuotaLedger(db, clock=clock)
        self.health = HealthMonitor(db, breakers=self.breakers, quota=self.quota, clock=clock)
        self.selector = ProviderSelector(db, breakers=self.breakers, quota=self.quota, health=self.health, clock=clock)

        self._probed: set[str] = set()
        self._exhaustion_reported = False

    def run_cycle(self) -> CycleResult:
        now = self.clock()
        sync_providers(self.db, now=now)
        reclaim_stale(self.db, now=now)

        items = claim_batch(self.db, limit=self.batch_size, worker=self.worker, now=now)
        result = CycleResult(claimed=len(items))
        self._probed = set()
        self._exhaustion_reported = False

        for item in items:
            item_id = item.id
            try:
                outcome = self._process(item)
            except Exception as e:
                # One bad item must not take the rest of the batch down.
                self.db.rollback()
                log.exception("Queue item %s failed during dispatch: %s", item_id, str(e))
                result.errors.append({"id": item_id, "error": f"{type(e).__name__}: {e}"})
                outcome = self._recover(item_id, e)
            result.count(outcome)

        if items:
            log.info(
                "Dispatch cycle worker=%s claimed=%s completed=%s rescheduled=%s dead_lettered=%s deferred=%s "
                "suppressed=%s errors=%s",
                self.worker,
                result.claimed,
                result.completed,
                result.rescheduled,
                result.dead_lettered,
                result.deferred,
                result.suppressed,
                len(result.errors),
            )
        return result

    # -- per item ----------------------------------------------------------

    def _process(self, item: QueueItem) -> str:
        if not is_exempt(item.category) and is_suppressed(self.db, item.recipient_email):
            complete_suppressed(self.db, item, now=self.clock())
            return SUPPRESSED

        try:
            message = self.renderer(item)
        except RenderError as e:
            # No provider can send a message that cannot be built.
            move_to_dead_letter(self.db, item, reason=f"render_error: {e}", now=self.clock())
            return DEAD_LETTERED

        rejected = set((item.meta or {}).get("rejected_by", []))
        usable = [p for p in self.adapters if p not in rejected]

        ranking = self.selector.rank(category=item.category, available=usable)
        attempted = 0
        errors: list[str] = []

        for cand in ranking:
            if not self._admit(cand):
                continue

            attempted += 1
            res = self._attempt(item, cand, message)
            if res.success:
                complete(self.db, item, provider=cand.provider, provider_message_id=res.provider_message_id, now=self.clock())
                return COMPLETED

            errors.append(f"{cand.provider}: {res.error}")
            if res.error_kind == PERMANENT:
                rejected.add(cand.provider)
                item.meta = {**(item.meta or {}), "rejected_by": sorted(rejected)}
                events.record_event(
                    self.db,
                    event_type=events.PROVIDER_FAILURE,
                    severity="error",
                    provider=cand.provider,
                    message=f"{cand.provider} rejected {item.id}: {res.error}",
                    context={"queue_item_id": item.id, "status_code": res.status_code, "error_kind": res.error_kind},
                    now=self.clock(),
                )
                self.db.commit()

        if attempted == 0:
            enabled = {p.id for p in load_providers(self.db)}
            blocked = [p for p in usable if p in enabled]
            if blocked:
                return self._defer_until_recovery(item, blocked)
            errors.append("no viable provider for this message")

        return self._fail_attempt(item, "; ".join(errors))

    def _admit(self, cand: RankedProvider) -> bool:
        """Probe gate and quota check for one candidate."""
        if cand.probe:
            if cand.provider in self._probed:
                return False
            if not self.breakers.try_acquire_probe(cand.provider):
                return False
            self._probed.add(cand.provider)

        if not self.quota.try_consume(cand.provider):
            if cand.probe:
                self.breakers.release_probe(cand.provider)
            self.quota.mark_exhausted(cand.provider)
            return False
        return True

    def _attempt(self, item: QueueItem, cand: RankedProvider, message: EmailMessage) -> SendResult:
        provider = cand.provider
        started = time.monotonic()
        try:
            res = self.adapters[provider].send(message)
        except Exception as e:
            log.warning("Provider %s raised while sending %s: %s", provider, item.id, str(e))
            res = SendResult(
                success=False,
                latency_ms=int((time.monotonic() - started) * 1000),
                error=f"exception:{type(e).__name__}:{str(e)}",
                error_kind=TRANSIENT,
            )

        item.providers_tried = [*(item.providers_tried or []), provider]
        item.updated_at = self.clock()
        self.db.commit()

        self.health.record(provider, success=res.success, latency_ms=res.latency_ms)
        if res.success:
            self.breakers.record_success(provider)
        elif res.counts_against_provider:
            self.breakers.record_failure(
                provider,
                {"error": res.error, "error_kind": res.error_kind, "status_code": res.status_code, "queue_item_id": item.id},
            )
        elif cand.probe:
            # The provider answered; a rejected recipient says nothing about its health.
            self.breakers.release_probe(provider)
        return res

    def _fail_attempt(self, item: QueueItem, error: str) -> str:
        now = self.clock()
        if item.attempts >= item.max_attempts:
            move_to_dead_letter(self.db, item, reason=f"Failed after {item.attempts} attempts: {error}", now=now)
            return DEAD_LETTERED
        reschedule(self.db, item, error=error, now=now)
        return RESCHEDULED

    def _defer_until_recovery(self, item: QueueItem, blocked: list[str]) -> str:
        now = self.clock()
        floor = now + timedelta(seconds=settings.CIRCUIT_COOLDOWN_SECONDS)
        until = self.selector.earliest_recovery(available=blocked) or now + backoff_delay(1)
        defer(self.db, item, until=max(until, floor), reason="all providers unavailable", now=now)
        self._report_exhaustion()
        return DEFERRED

    def _report_exhaustion(self) -> None:
        """At most one ``all_providers_exhausted`` event per detection window."""
        if self._exhaustion_reported:
            return
        if self.selector.rank(available=list(self.adapters)):
            # Something is still usable; this item was just unlucky.
            return

        now = self.clock()
        self._exhaustion_reported = True
        window = timedelta(seconds=settings.ALL_EXHAUSTED_EVENT_WINDOW_SECONDS)
        if events.recent_event_exists(self.db, event_type=events.ALL_PROVIDERS_EXHAUSTED, window=window, now=now):
            return

        states = {p: s.state for p, s in self.breakers.all_states().items() if p in self.adapters}
        quota = {p: self.quota.remaining(p).daily for p in self.adapters}
        events.record_event(
            self.db,
            event_type=events.ALL_PROVIDERS_EXHAUSTED,
            severity="critical",
            message="All email providers are unavailable (circuit open or quota exhausted)",
            context={"circuit_states": states, "daily_remaining": quota},
            now=now,
        )
        self.db.commit()

    def _recover(self, item_id: str, exc: Exception) -> str | None:
        try:
            item = self.db.get(QueueItem, item_id, populate_existing=True)
            if item is None or item.status != PROCESSING:
                return None
            return self._fail_attempt(item, f"dispatch_error:{type(exc).__name__}:{str(exc)}")
        except Exception:
            self.db.rollback()
            log.exception("Could not reschedule queue item %s", item_id)
            return None
