from __future__ import annotations

from datetime import timedelta

import pytest

from tests.utils_delivery import Clock, enqueue_simple, fresh_db


def _dead_letter(db, clock, **overrides):
    from app.delivery.dead_letter import move_to_dead_letter
    from app.delivery.queue import claim_batch

    enqueue_simple(db, clock, **overrides)
    (item,) = claim_batch(db, limit=1, worker="w", now=clock())
    item.providers_tried = ["brevo", "mailersend", "resend"]
    db.commit()
    return move_to_dead_letter(db, item, reason="Failed after 1 attempts: everything is down", now=clock())


def test_retry_creates_fresh_queue_item(monkeypatch):
    fresh_db(monkeypatch)

    from app.core.db import SessionLocal
    from app.delivery.dead_letter import list_dead_letters, retry_dead_letter, unreviewed_count
    from app.models.tables import HealthEvent, QueueItem

    clock = Clock()
    with SessionLocal() as db:
        dead = _dead_letter(db, clock, payload={"subject": "Verify", "html": "<p>code</p>"}, category="auth")
        assert unreviewed_count(db) == 1

        clock.advance(hours=2)
        item = retry_dead_letter(db, dead.id, actor="ops", now=clock())

        assert item.id != dead.queue_item_id
        assert item.status == "queued"
        assert item.attempts == 0
        assert item.providers_tried == []
        assert item.category == "auth"
        assert item.payload == {"subject": "Verify", "html": "<p>code</p>"}
        assert item.meta["retried_from_dead_letter"] == dead.id

        db.refresh(dead)
        assert dead.retry_queue_item_id == item.id
        assert dead.reviewed_by == "ops"
        assert unreviewed_count(db) == 0
        assert list_dead_letters(db, reviewed=True)[0].id == dead.id
        assert db.query(QueueItem).filter(QueueItem.status == "queued").count() == 1
        assert db.query(HealthEvent).filter(HealthEvent.event_type == "dlq_manual_retry").count() == 1


def test_retry_unknown_id_raises(monkeypatch):
    fresh_db(monkeypatch)

    from app.core.db import SessionLocal
    from app.delivery.dead_letter import retry_dead_letter
    from app.delivery.errors import NotFoundError

    with SessionLocal() as db:
        with pytest.raises(NotFoundError):
            retry_dead_letter(db, "nope", actor="ops")


def test_second_retry_is_a_conflict(monkeypatch):
    fresh_db(monkeypatch)

    from app.core.db import SessionLocal
    from app.delivery.dead_letter import retry_dead_letter
    from app.delivery.errors import ConflictError
    from app.models.tables import HealthEvent, QueueItem

    clock = Clock()
    with SessionLocal() as db:
        dead_id = _dead_letter(db, clock).id
        first_id = retry_dead_letter(db, dead_id, actor="ops", now=clock()).id

    # A second admin working from a stale page.
    with SessionLocal() as db:
        with pytest.raises(ConflictError) as exc:
            retry_dead_letter(db, dead_id, actor="other-admin", now=clock())
        assert first_id in str(exc.value)

        assert db.query(QueueItem).filter(QueueItem.status == "queued").count() == 1
        assert db.query(HealthEvent).filter(HealthEvent.event_type == "dlq_manual_retry").count() == 1


def test_purge_only_removes_reviewed_items(monkeypatch):
    fresh_db(monkeypatch)

    from app.core.db import SessionLocal
    from app.delivery.dead_letter import mark_reviewed, purge_dead_letters
    from app.models.tables import DeadLetterItem, HealthEvent

    clock = Clock()
    with SessionLocal() as db:
        reviewed = _dead_letter(db, clock).id
        clock.advance(seconds=1)
        unreviewed = _dead_letter(db, clock).id
        mark_reviewed(db, reviewed, actor="ops", now=clock())

        with pytest.raises(ValueError):
            purge_dead_letters(db, actor="ops")

        assert purge_dead_letters(db, actor="ops", ids=[reviewed, unreviewed], now=clock()) == 1
        assert [d.id for d in db.query(DeadLetterItem).all()] == [unreviewed]

        ev = db.query(HealthEvent).filter(HealthEvent.event_type == "dlq_purged").one()
        assert ev.context["count"] == 1
        assert ev.context["actor"] == "ops"


def test_review_alert_warns_about_old_unreviewed_items(monkeypatch):
    fresh_db(monkeypatch)

    from app.core.db import SessionLocal
    from app.delivery.dead_letter import review_alert
    from app.models.tables import HealthEvent

    clock = Clock()
    with SessionLocal() as db:
        _dead_letter(db, clock)

        assert review_alert(db, now=clock() + timedelta(hours=2)) == 0
        assert review_alert(db, now=clock() + timedelta(hours=25)) == 1

        ev = db.query(HealthEvent).filter(HealthEvent.event_type == "dlq_review_needed").one()
        assert ev.severity == "warning"
        assert ev.context["count"] == 1
        assert ev.context["providers_failed"] == ["brevo", "mailersend", "resend"]
