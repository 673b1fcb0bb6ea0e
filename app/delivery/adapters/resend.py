from __future__ import annotations

from dataclasses import dataclass

import httpx

from app.delivery.adapters.base import EmailMessage
from app.delivery.adapters.http_json import HttpJsonAdapter, _json_or_empty

RESEND_URL = "https://api.resend.com/emails"


@dataclass(frozen=True)
class ResendAdapter(HttpJsonAdapter):
    provider: str = "resend"

    def build_request(self, message: EmailMessage) -> tuple[str, dict, dict]:
        sender = f"{message.from_name} <{message.from_email}>" if message.from_name else message.from_email
        body: dict = {"from": sender, "to": [message.to_email], "subject": message.subject}
        if message.html:
            body["html"] = message.html
        if message.text:
            body["text"] = message.text
        if message.reply_to:
            body["reply_to"] = message.reply_to
        if message.headers:
            body["headers"] = message.headers
        if message.tags:
            body["tags"] = [{"name": "category", "value": t} for t in message.tags]
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        return RESEND_URL, headers, body

    def message_id(self, resp: httpx.Response) -> str | None:
        return _json_or_empty(resp).get("id")
