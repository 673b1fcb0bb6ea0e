from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

from app.delivery.adapters.base import TRANSIENT, EmailMessage, SendResult, classify_status


def _truncate(s: str, n: int = 200) -> str:
    s = s or ""
    return s if len(s) <= n else s[:n] + "…"


@dataclass(frozen=True)
class HttpJsonAdapter(ABC):
    """POST a JSON body to a provider's send endpoint.

    Subclasses describe the request and where the message id lives; status
    mapping, timeouts and latency measurement are shared.
    """

    api_key: str
    timeout_s: float = 10.0
    provider: str = ""

    @abstractmethod
    def build_request(self, message: EmailMessage) -> tuple[str, dict, dict]:
        """Return (url, headers, json body)."""

    @abstractmethod
    def message_id(self, resp: httpx.Response) -> str | None: ...

    def send(self, message: EmailMessage) -> SendResult:
        url, headers, body = self.build_request(message)
        started = time.monotonic()
        try:
            resp = httpx.post(url, headers=headers, json=body, timeout=self.timeout_s)
        except httpx.TimeoutException as e:
            return SendResult(
                success=False,
                latency_ms=_elapsed_ms(started),
                error=f"{self.provider}_timeout:{type(e).__name__}",
                error_kind=TRANSIENT,
            )
        except httpx.HTTPError as e:
            return SendResult(
                success=False,
                latency_ms=_elapsed_ms(started),
                error=f"{self.provider}_transport:{type(e).__name__}:{_truncate(str(e))}",
                error_kind=TRANSIENT,
            )

        latency = _elapsed_ms(started)
        if resp.status_code >= 400:
            return SendResult(
                success=False,
                latency_ms=latency,
                error=f"{self.provider}_http_{resp.status_code}:{_truncate(resp.text)}",
                error_kind=classify_status(resp.status_code),
                status_code=resp.status_code,
            )

        return SendResult(
            success=True,
            latency_ms=latency,
            provider_message_id=self.message_id(resp),
            status_code=resp.status_code,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _json_or_empty(resp: httpx.Response) -> dict:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
