from __future__ import annotations

from app.core.config import settings
from app.delivery.adapters.base import ProviderAdapter
from app.delivery.adapters.brevo import BrevoAdapter
from app.delivery.adapters.mailersend import MailerSendAdapter
from app.delivery.adapters.resend import ResendAdapter
from app.delivery.errors import UnknownProviderError
from app.delivery.providers import KNOWN_PROVIDERS


def get_adapter(provider: str) -> ProviderAdapter | None:
    """Adapter for ``provider``, or None when it has no credentials configured."""
    timeout = settings.PROVIDER_TIMEOUT_SECONDS
    if provider == "resend":
        return ResendAdapter(api_key=settings.RESEND_API_KEY, timeout_s=timeout) if settings.RESEND_API_KEY else None
    if provider == "brevo":
        return BrevoAdapter(api_key=settings.BREVO_API_KEY, timeout_s=timeout) if settings.BREVO_API_KEY else None
    if provider == "mailersend":
        if not settings.MAILERSEND_API_KEY:
            return None
        return MailerSendAdapter(api_key=settings.MAILERSEND_API_KEY, timeout_s=timeout)
    raise UnknownProviderError(f"No adapter for provider={provider}")


def build_adapters() -> dict[str, ProviderAdapter]:
    adapters: dict[str, ProviderAdapter] = {}
    for provider in KNOWN_PROVIDERS:
        adapter = get_adapter(provider)
        if adapter is not None:
            adapters[provider] = adapter
    return adapters
