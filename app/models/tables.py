from __future__ import annotations

from sqlalchemy import Boolean, Date, DateTime, Index, Integer, BigInteger, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

# Use JSONB on Postgres, fallback to JSON for SQLite/test environments.
JSONType = JSON().with_variant(JSONB, "postgresql")

from app.models.base import Base


class EmailProvider(Base):
    __tablename__ = "email_providers"
    id: Mapped[str] = mapped_column(String(40), primary_key=True)  # resend/brevo/mailersend
    priority: Mapped[int] = mapped_column(Integer, nullable=False)  # lower = preferred
    daily_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    monthly_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)


class CircuitBreakerState(Base):
    __tablename__ = "email_circuit_breaker_state"
    provider: Mapped[str] = mapped_column(String(40), primary_key=True)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="closed")  # closed/open/half_open
    failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    consecutive_successes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_failure_time: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set iff state == open.
    next_retry_time: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)
    probe_started_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)


class QuotaRecord(Base):
    __tablename__ = "email_provider_quota"
    __table_args__ = (UniqueConstraint("provider", "date", name="uq_quota_provider_date"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    date: Mapped["Date"] = mapped_column(Date, nullable=False)
    emails_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    daily_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    monthly_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    exhausted_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)


class QueueItem(Base):
    __tablename__ = "email_queue"
    __table_args__ = (Index("ix_email_queue_status_next_retry", "status", "next_retry_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    recipient_email: Mapped[str] = mapped_column(String(320), nullable=False)
    recipient_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    template: Mapped[str] = mapped_column(String(200), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    status: Mapped[str] = mapped_column(String(20), nullable=False)  # queued/processing/failed/completed
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_retry_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)

    claimed_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    claimed_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)

    providers_tried: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    meta: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)

    created_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)


class DeadLetterItem(Base):
    __tablename__ = "email_dead_letter_queue"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    queue_item_id: Mapped[str] = mapped_column(String(36), nullable=False)

    recipient_email: Mapped[str] = mapped_column(String(320), nullable=False)
    recipient_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    template: Mapped[str] = mapped_column(String(200), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    providers_tried: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    failure_reason: Mapped[str] = mapped_column(Text, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False)

    original_created_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)
    moved_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)
    reviewed_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    retry_queue_item_id: Mapped[str | None] = mapped_column(String(36), nullable=True)


class ProviderMetrics(Base):
    __tablename__ = "email_provider_metrics"
    __table_args__ = (UniqueConstraint("provider", "date", name="uq_metrics_provider_date"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    date: Mapped["Date"] = mapped_column(Date, nullable=False)
    total_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_latency_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    health_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    scored_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)

    @property
    def success_rate(self) -> float:
        return self.success_count / self.total_requests if self.total_requests else 0.0

    @property
    def average_latency_ms(self) -> float:
        return self.total_latency_ms / self.total_requests if self.total_requests else 0.0


class HealthEvent(Base):
    __tablename__ = "email_health_events"
    __table_args__ = (Index("ix_health_events_type_created", "event_type", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    provider: Mapped[str | None] = mapped_column(String(40), nullable=True)
    event_type: Mapped[str] = mapped_column(String(60), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)  # info/warning/error/critical
    message: Mapped[str] = mapped_column(String(1000), nullable=False)
    context: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    created_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)


class EmailSuppression(Base):
    __tablename__ = "email_suppressions"
    email: Mapped[str] = mapped_column(String(320), primary_key=True)  # lowercased
    reason: Mapped[str] = mapped_column(String(20), nullable=False)  # bounce/complaint/unsubscribe/manual
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    added_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)
