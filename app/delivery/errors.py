from __future__ import annotations


class DeliveryError(Exception):
    pass


class EnqueueError(DeliveryError):
    """Producer handed us something we cannot queue. Surfaced to the caller."""

    def __init__(self, message: str, *, errors: list[dict] | None = None):
        super().__init__(message)
        self.errors = errors or []


class UnknownProviderError(DeliveryError):
    pass


class NotFoundError(DeliveryError):
    pass


class ConflictError(DeliveryError):
    pass
