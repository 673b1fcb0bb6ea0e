from __future__ import annotations

from datetime import timedelta

from tests.utils_delivery import Clock, fresh_db


def test_publish_enqueues_through_registered_handlers(monkeypatch):
    fresh_db(monkeypatch)

    from app.core.db import SessionLocal
    from app.delivery.handlers import publish, registered

    assert registered("chat.message_created")

    with SessionLocal() as db:
        (item,) = publish(
            db,
            "chat.message_created",
            recipient_email="sharer@example.com",
            recipient_id="user-7",
            sender_name="Ana <script>",
            message_preview="Are the apples still available?",
            room_id="room-1",
        )
        assert item.category == "chat"
        assert item.template == "chat-notification"
        assert item.recipient_id == "user-7"
        assert item.payload["subject"] == "New message from Ana <script>"
        assert "Ana &lt;script&gt;" in item.payload["html"]
        assert "/chat/room-1" in item.payload["html"]

        (match,) = publish(
            db,
            "listing.matched",
            recipient_email="eater@example.com",
            food_name="Apples",
            food_item_id="food-3",
            distance_km=1.26,
        )
        assert match.category == "listing_match"
        assert "1.3km" in match.payload["html"]

        assert publish(db, "user.logged_in", recipient_email="x@example.com") == []


def test_custom_handler_registration(monkeypatch):
    fresh_db(monkeypatch)

    from app.core.db import SessionLocal
    from app.delivery import handlers
    from app.delivery.queue import enqueue

    monkeypatch.setattr(handlers, "_HANDLERS", handlers.defaultdict(list))

    @handlers.on("digest.weekly")
    def weekly(db, *, recipient_email, **_):
        return enqueue(db, recipient_email=recipient_email, category="digest", template="weekly", payload={"text": "hi"})

    with SessionLocal() as db:
        (item,) = handlers.publish(db, "digest.weekly", recipient_email="a@example.com")
        assert item.template == "weekly"


def test_dispatch_task_without_credentials_is_a_noop(monkeypatch):
    fresh_db(monkeypatch)

    from app.core.config import settings
    from app.tasks.delivery_tasks import dispatch_queue

    for key in ("RESEND_API_KEY", "BREVO_API_KEY", "MAILERSEND_API_KEY"):
        monkeypatch.setattr(settings, key, None)

    assert dispatch_queue() == {"ok": False, "reason": "no_adapters"}


def test_periodic_tasks(monkeypatch):
    fresh_db(monkeypatch)

    from app.core.db import SessionLocal
    from app.delivery.dead_letter import move_to_dead_letter
    from app.delivery.queue import claim_batch, enqueue
    from app.models.tables import HealthEvent
    from app.tasks.delivery_tasks import prune_retention, reclaim_stale_claims, review_dead_letters, snapshot_provider_health
    from app.util.time import now_utc

    long_ago = Clock(now_utc() - timedelta(days=2))
    with SessionLocal() as db:
        enqueue(db, recipient_email="a@example.com", category="chat", template="t", payload={"text": "x"}, now=long_ago())
        (item,) = claim_batch(db, limit=1, worker="w", now=long_ago())
        move_to_dead_letter(db, item, reason="Failed after 3 attempts: down", now=long_ago())

    out = snapshot_provider_health()
    assert out["providers"] == {"resend": 100, "brevo": 100, "mailersend": 100}

    assert reclaim_stale_claims() == {"ok": True, "reclaimed": 0}
    assert review_dead_letters() == {"ok": True, "unreviewed": 1}
    assert prune_retention()["ok"] is True

    with SessionLocal() as db:
        assert db.query(HealthEvent).filter(HealthEvent.event_type == "dlq_review_needed").count() == 1


def test_beat_schedule_covers_periodic_jobs(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")

    from app.core.celery_app import celery

    tasks = {entry["task"] for entry in celery.conf.beat_schedule.values()}
    assert tasks == {
        "app.tasks.delivery_tasks.dispatch_queue",
        "app.tasks.delivery_tasks.snapshot_provider_health",
        "app.tasks.delivery_tasks.reclaim_stale_claims",
        "app.tasks.delivery_tasks.review_dead_letters",
        "app.tasks.delivery_tasks.prune_retention",
    }
