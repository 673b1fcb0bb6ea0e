"""Turn a queue item into an ``EmailMessage``.

Templates are rendered upstream; producers put the finished subject and
bodies in the item payload. This only maps fields and applies defaults.
"""

from __future__ import annotations

from app.core.config import settings
from app.delivery.adapters.base import EmailMessage
from app.delivery.errors import DeliveryError
from app.models.tables import QueueItem

DEFAULT_SUBJECT = "FoodShare Notification"


class RenderError(DeliveryError):
    pass


def render_message(item: QueueItem) -> EmailMessage:
    data = item.payload or {}
    html = data.get("html") or data.get("message")
    text = data.get("text")
    if not html and not text:
        raise RenderError(f"Queue item {item.id} has no html/text content for template={item.template}")

    return EmailMessage(
        to_email=item.recipient_email,
        to_name=data.get("to_name"),
        subject=data.get("subject") or DEFAULT_SUBJECT,
        html=html,
        text=text,
        from_email=data.get("from") or settings.MAIL_FROM_ADDRESS,
        from_name=data.get("from_name") or settings.MAIL_FROM_NAME,
        reply_to=data.get("reply_to"),
        headers={"X-Queue-Item-Id": item.id},
        tags=[item.category],
    )
