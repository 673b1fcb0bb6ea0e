"""Domain events -> queued emails.

Producers elsewhere in the platform call :func:`publish`; handlers
registered with :func:`on` turn the event into an ``enqueue`` call. Nothing
here talks to a provider.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from html import escape
from typing import Callable

from sqlalchemy.orm import Session

from app.core.config import settings
from app.delivery.queue import enqueue
from app.models.tables import QueueItem

log = logging.getLogger("delivery.handlers")

Handler = Callable[..., "QueueItem | None"]

_HANDLERS: dict[str, list[Handler]] = defaultdict(list)


def on(event_name: str) -> Callable[[Handler], Handler]:
    def register(fn: Handler) -> Handler:
        _HANDLERS[event_name].append(fn)
        return fn

    return register


def registered(event_name: str) -> list[Handler]:
    return list(_HANDLERS.get(event_name, []))


def publish(db: Session, event_name: str, **data) -> list[QueueItem]:
    """Run every handler for ``event_name``; returns the items they queued.

    EnqueueError from a handler propagates: the producer sent bad data.
    """
    handlers = registered(event_name)
    if not handlers:
        log.debug("No email handlers for event=%s", event_name)
        return []

    queued: list[QueueItem] = []
    for fn in handlers:
        item = fn(db, **data)
        if item is not None:
            queued.append(item)
    return queued


def _button(href: str, label: str) -> str:
    return (
        f'<a href="{escape(href)}" style="display:inline-block;background:#10b981;color:#fff;'
        f'padding:12px 24px;border-radius:6px;text-decoration:none;">{escape(label)}</a>'
    )


def _wrap(body: str) -> str:
    return f'<div style="font-family:sans-serif;max-width:600px;margin:0 auto;">{body}</div>'


@on("chat.message_created")
def chat_message_created(
    db: Session,
    *,
    recipient_email: str,
    sender_name: str,
    message_preview: str,
    room_id: str,
    recipient_id: str | None = None,
    **_,
) -> QueueItem:
    url = f"{settings.APP_BASE_URL}/chat/{room_id}"
    html = _wrap(
        "<h2>New Message</h2>"
        f"<p><strong>{escape(sender_name)}</strong> sent you a message:</p>"
        f'<p style="color:#666;font-style:italic;">{escape(message_preview)}</p>'
        + _button(url, "Reply to Message")
    )
    return enqueue(
        db,
        recipient_email=recipient_email,
        recipient_id=recipient_id,
        category="chat",
        template="chat-notification",
        payload={
            "subject": f"New message from {sender_name}",
            "html": html,
            "text": f"{sender_name} sent you a message: {message_preview}\n{url}",
            "room_id": room_id,
        },
    )


@on("listing.matched")
def listing_matched(
    db: Session,
    *,
    recipient_email: str,
    food_name: str,
    food_item_id: str,
    distance_km: float,
    recipient_id: str | None = None,
    **_,
) -> QueueItem:
    url = f"{settings.APP_BASE_URL}/food/{food_item_id}"
    html = _wrap(
        "<h2>New Food Listing Near You</h2>"
        f"<p><strong>{escape(food_name)}</strong> is available {distance_km:.1f}km from you!</p>"
        + _button(url, "View Listing")
    )
    return enqueue(
        db,
        recipient_email=recipient_email,
        recipient_id=recipient_id,
        category="listing_match",
        template="food-listing",
        payload={
            "subject": f"New food available: {food_name}",
            "html": html,
            "text": f"{food_name} is available {distance_km:.1f}km from you: {url}",
            "food_item_id": food_item_id,
        },
    )


@on("report.filed")
def report_filed(
    db: Session,
    *,
    recipient_email: str,
    report_id: str,
    report_type: str,
    subject: str,
    submitter_name: str,
    message_preview: str = "",
    **_,
) -> QueueItem:
    url = f"{settings.APP_BASE_URL}/admin/reports/{report_id}"
    html = _wrap(
        "<h2>New Report Filed</h2>"
        f"<p><strong>From:</strong> {escape(submitter_name)}</p>"
        f"<p><strong>Type:</strong> {escape(report_type)}</p>"
        f"<p><strong>Subject:</strong> {escape(subject)}</p>"
        f"<p>{escape(message_preview)}</p>" + _button(url, "Review Report")
    )
    return enqueue(
        db,
        recipient_email=recipient_email,
        category="moderation_report",
        template="report-alert",
        payload={
            "subject": f"New {report_type} report: {subject}",
            "html": html,
            "report_id": report_id,
        },
    )
