from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

TRANSIENT = "transient"
PERMANENT = "permanent"
RATE_LIMITED = "rate_limited"


@dataclass(frozen=True)
class EmailMessage:
    to_email: str
    subject: str
    html: str | None = None
    text: str | None = None
    to_name: str | None = None
    from_email: str = "noreply@foodshare.app"
    from_name: str | None = None
    reply_to: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SendResult:
    success: bool
    latency_ms: int = 0
    provider_message_id: str | None = None
    error: str | None = None
    error_kind: str | None = None  # transient | permanent | rate_limited
    status_code: int | None = None

    @property
    def counts_against_provider(self) -> bool:
        """Permanent rejections are the message's fault, not the provider's."""
        return not self.success and self.error_kind != PERMANENT


class ProviderAdapter(Protocol):
    provider: str

    def send(self, message: EmailMessage) -> SendResult: ...


def classify_status(status_code: int) -> str:
    if status_code == 429:
        return RATE_LIMITED
    if status_code >= 500 or status_code in (408, 425):
        return TRANSIENT
    return PERMANENT
