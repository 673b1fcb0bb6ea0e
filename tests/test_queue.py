from __future__ import annotations

from datetime import timedelta

import pytest

from tests.utils_delivery import Clock, enqueue_simple, fresh_db


def test_enqueue_rejects_malformed_input(monkeypatch):
    fresh_db(monkeypatch)

    from app.core.db import SessionLocal
    from app.delivery.errors import EnqueueError
    from app.delivery.queue import enqueue
    from app.models.tables import QueueItem

    with SessionLocal() as db:
        with pytest.raises(EnqueueError) as exc:
            enqueue(db, recipient_email="not-an-email", category="chat", template="t", payload={})
        assert exc.value.errors
        assert exc.value.errors[0]["loc"] == ("recipient_email",)

        for addr in ("a@.com", "a@b.", "a@@b.com", "a@b..com", "two words@example.com"):
            with pytest.raises(EnqueueError):
                enqueue(db, recipient_email=addr, category="chat", template="t", payload={})

        with pytest.raises(EnqueueError):
            enqueue(db, recipient_email="a@example.com", category="newsletter-blast", template="t", payload={})

        with pytest.raises(EnqueueError):
            enqueue(db, recipient_email="a@example.com", category="chat", template="", payload={})

        assert db.query(QueueItem).count() == 0


def test_enqueue_defaults(monkeypatch):
    fresh_db(monkeypatch)

    from app.core.db import SessionLocal

    clock = Clock()
    with SessionLocal() as db:
        item = enqueue_simple(db, clock, recipient_email="  Someone@Example.COM ")
        assert item.status == "queued"
        assert item.attempts == 0
        assert item.max_attempts == 3
        assert item.providers_tried == []
        assert item.recipient_email == "Someone@example.com"


def test_backoff_schedule(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")

    from app.delivery.queue import backoff_delay

    assert backoff_delay(1) == timedelta(minutes=15)
    assert backoff_delay(2) == timedelta(minutes=30)
    assert backoff_delay(3) == timedelta(minutes=60)
    assert backoff_delay(7) == timedelta(minutes=60)
    assert backoff_delay(2, [1, 2, 4, 8]) == timedelta(minutes=2)


def test_claims_are_exclusive(monkeypatch):
    fresh_db(monkeypatch)

    from app.core.db import SessionLocal
    from app.delivery.queue import claim_batch

    clock = Clock()
    with SessionLocal() as db:
        for _ in range(3):
            enqueue_simple(db, clock)

    with SessionLocal() as db1, SessionLocal() as db2:
        first = claim_batch(db1, limit=2, worker="w1", now=clock())
        second = claim_batch(db2, limit=10, worker="w2", now=clock())

        assert len(first) == 2
        assert len(second) == 1
        assert {i.id for i in first}.isdisjoint({i.id for i in second})
        assert all(i.status == "processing" and i.attempts == 1 for i in first + second)
        assert {i.claimed_by for i in second} == {"w2"}

        assert claim_batch(db1, limit=10, worker="w1", now=clock()) == []


def test_defer_refunds_attempt_and_reschedule_charges_it(monkeypatch):
    fresh_db(monkeypatch)

    from app.core.db import SessionLocal
    from app.delivery.queue import claim_batch, defer, reschedule
    from app.util.time import as_utc

    clock = Clock()
    with SessionLocal() as db:
        enqueue_simple(db, clock)
        (item,) = claim_batch(db, limit=1, worker="w", now=clock())

        defer(db, item, until=clock() + timedelta(minutes=5), reason="all providers unavailable", now=clock())
        assert item.status == "queued"
        assert item.attempts == 0
        assert as_utc(item.next_retry_at) == clock() + timedelta(minutes=5)

        clock.advance(minutes=5)
        (item,) = claim_batch(db, limit=1, worker="w", now=clock())
        reschedule(db, item, error="brevo: 503", now=clock())
        assert item.attempts == 1
        assert item.last_error == "brevo: 503"
        assert as_utc(item.next_retry_at) == clock() + timedelta(minutes=15)


def test_supersede_only_touches_queued_items(monkeypatch):
    fresh_db(monkeypatch)

    from app.core.db import SessionLocal
    from app.delivery.queue import claim_batch, supersede
    from app.models.tables import QueueItem

    clock = Clock()
    with SessionLocal() as db:
        a = enqueue_simple(db, clock).id
        assert supersede(db, a, reason="message edited", now=clock()) is True

        item = db.get(QueueItem, a)
        db.refresh(item)
        assert item.status == "completed"
        assert item.meta["superseded"] is True
        assert item.meta["superseded_reason"] == "message edited"

        assert supersede(db, a) is False
        assert supersede(db, "missing-id") is False

        clock.advance(seconds=1)
        b = enqueue_simple(db, clock).id
        claim_batch(db, limit=5, worker="w", now=clock())
        assert supersede(db, b) is False


def test_reclaim_stale_returns_abandoned_claims(monkeypatch):
    fresh_db(monkeypatch)

    from app.core.db import SessionLocal
    from app.delivery.queue import claim_batch, queue_stats, reclaim_stale
    from app.models.tables import HealthEvent, QueueItem

    clock = Clock()
    with SessionLocal() as db:
        item_id = enqueue_simple(db, clock).id
        claim_batch(db, limit=1, worker="dead-worker", now=clock())

        clock.advance(minutes=30)
        assert reclaim_stale(db, now=clock()) == 0

        clock.advance(minutes=31)
        assert reclaim_stale(db, now=clock()) == 1

        item = db.get(QueueItem, item_id)
        db.refresh(item)
        assert item.status == "queued"
        assert item.claimed_by is None
        assert db.query(HealthEvent).filter(HealthEvent.event_type == "queue_reclaimed").count() == 1
        assert queue_stats(db)["queued"] == 1


def test_reclaim_dead_letters_claims_with_no_budget_left(monkeypatch):
    fresh_db(monkeypatch)

    from app.core.db import SessionLocal
    from app.delivery.queue import claim_batch, reclaim_stale
    from app.models.tables import DeadLetterItem, HealthEvent, QueueItem

    clock = Clock()
    with SessionLocal() as db:
        item_id = enqueue_simple(db, clock).id

        # Each round the worker dies holding the claim.
        for attempt in (1, 2, 3):
            (item,) = claim_batch(db, limit=1, worker="crashy", now=clock())
            assert item.attempts == attempt
            clock.advance(hours=2)
            assert reclaim_stale(db, now=clock()) == 1

        item = db.get(QueueItem, item_id, populate_existing=True)
        assert item.status == "failed"
        assert item.attempts == 3
        assert claim_batch(db, limit=1, worker="w", now=clock()) == []

        (dead,) = db.query(DeadLetterItem).all()
        assert dead.queue_item_id == item_id
        assert dead.attempts == 3
        assert dead.failure_reason.startswith("abandoned_claim")

        last = (
            db.query(HealthEvent)
            .filter(HealthEvent.event_type == "queue_reclaimed")
            .order_by(HealthEvent.created_at.desc())
            .first()
        )
        assert last.context["dead_lettered"] == 1
        assert last.context["requeued"] == 0


def test_purge_completed_respects_retention(monkeypatch):
    fresh_db(monkeypatch)

    from app.core.db import SessionLocal
    from app.delivery.queue import claim_batch, complete, purge_completed
    from app.models.tables import QueueItem

    clock = Clock()
    with SessionLocal() as db:
        enqueue_simple(db, clock)
        (item,) = claim_batch(db, limit=1, worker="w", now=clock())
        complete(db, item, provider="brevo", provider_message_id="m-1", now=clock())

        assert purge_completed(db, retention_days=7, now=clock() + timedelta(days=6)) == 0
        assert purge_completed(db, retention_days=7, now=clock() + timedelta(days=8)) == 1
        assert db.query(QueueItem).count() == 0
