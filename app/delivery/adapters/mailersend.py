from __future__ import annotations

from dataclasses import dataclass

import httpx

from app.delivery.adapters.base import EmailMessage
from app.delivery.adapters.http_json import HttpJsonAdapter

MAILERSEND_URL = "https://api.mailersend.com/v1/email"


@dataclass(frozen=True)
class MailerSendAdapter(HttpJsonAdapter):
    provider: str = "mailersend"

    def build_request(self, message: EmailMessage) -> tuple[str, dict, dict]:
        sender: dict = {"email": message.from_email}
        if message.from_name:
            sender["name"] = message.from_name
        to: dict = {"email": message.to_email}
        if message.to_name:
            to["name"] = message.to_name
        body: dict = {"from": sender, "to": [to], "subject": message.subject}
        if message.html:
            body["html"] = message.html
        if message.text:
            body["text"] = message.text
        if message.reply_to:
            body["reply_to"] = {"email": message.reply_to}
        if message.tags:
            body["tags"] = message.tags
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        return MAILERSEND_URL, headers, body

    def message_id(self, resp: httpx.Response) -> str | None:
        # 202 Accepted with an empty body; the id travels in a header.
        return resp.headers.get("X-Message-Id") or resp.headers.get("x-message-id")
