from __future__ import annotations

from dataclasses import dataclass

import httpx

from app.delivery.adapters.base import EmailMessage
from app.delivery.adapters.http_json import HttpJsonAdapter, _json_or_empty

BREVO_URL = "https://api.brevo.com/v3/smtp/email"


@dataclass(frozen=True)
class BrevoAdapter(HttpJsonAdapter):
    provider: str = "brevo"

    def build_request(self, message: EmailMessage) -> tuple[str, dict, dict]:
        to: dict = {"email": message.to_email}
        if message.to_name:
            to["name"] = message.to_name
        body: dict = {
            "sender": {"email": message.from_email, "name": message.from_name or "FoodShare"},
            "to": [to],
            "subject": message.subject,
        }
        if message.html:
            body["htmlContent"] = message.html
        if message.text:
            body["textContent"] = message.text
        if message.reply_to:
            body["replyTo"] = {"email": message.reply_to}
        if message.headers:
            body["headers"] = message.headers
        if message.tags:
            body["tags"] = message.tags
        headers = {"api-key": self.api_key, "Accept": "application/json", "Content-Type": "application/json"}
        return BREVO_URL, headers, body

    def message_id(self, resp: httpx.Response) -> str | None:
        return _json_or_empty(resp).get("messageId")
