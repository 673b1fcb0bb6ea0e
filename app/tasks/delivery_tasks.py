from __future__ import annotations

import logging

from app.core.celery_app import celery
from app.core.config import settings
from app.core.db import SessionLocal

log = logging.getLogger("app")


@celery.task(name="app.tasks.delivery_tasks.dispatch_queue")
def dispatch_queue(batch_size: int | None = None) -> dict:
    # Avoid circular imports: import dispatcher inside task.
    from app.delivery.adapters.registry import build_adapters
    from app.delivery.dispatcher import Dispatcher

    adapters = build_adapters()
    if not adapters:
        log.warning("dispatch_queue: no provider has credentials configured; skipping")
        return {"ok": False, "reason": "no_adapters"}

    db = SessionLocal()
    try:
        result = Dispatcher(db, adapters=adapters, batch_size=batch_size).run_cycle()
        return {"ok": True, **result.as_dict()}
    finally:
        db.close()


@celery.task(name="app.tasks.delivery_tasks.reclaim_stale_claims")
def reclaim_stale_claims() -> dict:
    from app.delivery.queue import reclaim_stale

    db = SessionLocal()
    try:
        return {"ok": True, "reclaimed": reclaim_stale(db)}
    finally:
        db.close()


@celery.task(name="app.tasks.delivery_tasks.snapshot_provider_health")
def snapshot_provider_health() -> dict:
    from app.delivery.health import HealthMonitor
    from app.delivery.providers import sync_providers

    db = SessionLocal()
    try:
        sync_providers(db)
        summary = HealthMonitor(db).snapshot()
        return {"ok": True, "providers": {h.provider: h.health_score for h in summary}}
    finally:
        db.close()


@celery.task(name="app.tasks.delivery_tasks.review_dead_letters")
def review_dead_letters() -> dict:
    from app.delivery.dead_letter import review_alert

    db = SessionLocal()
    try:
        return {"ok": True, "unreviewed": review_alert(db)}
    finally:
        db.close()


@celery.task(name="app.tasks.delivery_tasks.prune_retention")
def prune_retention() -> dict:
    """Weekly cleanup. Dead letters are never pruned here; purge is an admin action."""
    from app.delivery.events import prune_events
    from app.delivery.health import prune_metrics
    from app.delivery.queue import purge_completed

    db = SessionLocal()
    try:
        out = {
            "completed": purge_completed(db, retention_days=settings.COMPLETED_RETENTION_DAYS),
            "events": prune_events(db, retention_days=settings.EVENT_RETENTION_DAYS),
            "metrics": prune_metrics(db, retention_days=settings.METRICS_RETENTION_DAYS),
        }
        log.info("prune_retention: %s", out)
        return {"ok": True, **out}
    finally:
        db.close()
