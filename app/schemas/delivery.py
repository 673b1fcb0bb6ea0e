from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, EmailStr, Field, field_validator

Category = Literal[
    "auth",
    "chat",
    "listing_match",
    "moderation_report",
    "campaign",
    "digest",
    "system",
]

SuppressionReason = Literal["bounce", "complaint", "unsubscribe", "manual"]


class EnqueueRequest(BaseModel):
    recipient_email: EmailStr
    recipient_id: str | None = Field(default=None, max_length=64)
    category: Category
    template: str = Field(min_length=1, max_length=200)
    payload: dict = Field(default_factory=dict)
    max_attempts: int | None = Field(default=None, ge=1, le=10)

    @field_validator("recipient_email", mode="before")
    @classmethod
    def _strip_email(cls, v):
        return v.strip() if isinstance(v, str) else v


class SupersedeRequest(BaseModel):
    reason: str = Field(default="superseded", max_length=500)


class PurgeRequest(BaseModel):
    ids: list[str] = Field(default_factory=list)
    reviewed_before: datetime | None = None


class SuppressionRequest(BaseModel):
    email: EmailStr
    reason: SuppressionReason = "manual"
    notes: str | None = Field(default=None, max_length=1000)
