"""delivery core

Revision ID: 0001_delivery_core
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_delivery_core"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "email_providers",
        sa.Column("id", sa.String(length=40), primary_key=True),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("daily_limit", sa.Integer(), nullable=False),
        sa.Column("monthly_limit", sa.Integer(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "email_circuit_breaker_state",
        sa.Column("provider", sa.String(length=40), primary_key=True),
        sa.Column("state", sa.String(length=20), nullable=False, server_default="closed"),
        sa.Column("failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("consecutive_successes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_failure_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_retry_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("probe_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("state IN ('closed', 'open', 'half_open')", name="ck_breaker_state"),
    )

    op.create_table(
        "email_provider_quota",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("provider", sa.String(length=40), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("emails_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("daily_limit", sa.Integer(), nullable=False),
        sa.Column("monthly_limit", sa.Integer(), nullable=False),
        sa.Column("exhausted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("provider", "date", name="uq_quota_provider_date"),
        sa.CheckConstraint("emails_sent >= 0", name="ck_quota_emails_sent_nonneg"),
    )

    op.create_table(
        "email_queue",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("recipient_email", sa.String(length=320), nullable=False),
        sa.Column("recipient_id", sa.String(length=64), nullable=True),
        sa.Column("category", sa.String(length=50), nullable=False),
        sa.Column("template", sa.String(length=200), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_by", sa.String(length=200), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("providers_tried", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("status IN ('queued', 'processing', 'failed', 'completed')", name="ck_email_queue_status"),
    )
    op.create_index("ix_email_queue_status_next_retry", "email_queue", ["status", "next_retry_at"])
    op.create_index("ix_email_queue_recipient_id", "email_queue", ["recipient_id"])

    op.create_table(
        "email_dead_letter_queue",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("queue_item_id", sa.String(length=36), nullable=False),
        sa.Column("recipient_email", sa.String(length=320), nullable=False),
        sa.Column("recipient_id", sa.String(length=64), nullable=True),
        sa.Column("category", sa.String(length=50), nullable=False),
        sa.Column("template", sa.String(length=200), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("providers_tried", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("original_created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("moved_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reviewed_by", sa.String(length=200), nullable=True),
        sa.Column("retry_queue_item_id", sa.String(length=36), nullable=True),
    )
    op.create_index("ix_email_dlq_reviewed_moved", "email_dead_letter_queue", ["reviewed_at", "moved_at"])

    op.create_table(
        "email_provider_metrics",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("provider", sa.String(length=40), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("total_requests", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_latency_ms", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("health_score", sa.Integer(), nullable=True),
        sa.Column("scored_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("provider", "date", name="uq_metrics_provider_date"),
    )

    op.create_table(
        "email_health_events",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("provider", sa.String(length=40), nullable=True),
        sa.Column("event_type", sa.String(length=60), nullable=False),
        sa.Column("severity", sa.String(length=20), nullable=False),
        sa.Column("message", sa.String(length=1000), nullable=False),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_health_events_type_created", "email_health_events", ["event_type", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_health_events_type_created", table_name="email_health_events")
    op.drop_table("email_health_events")
    op.drop_table("email_provider_metrics")
    op.drop_index("ix_email_dlq_reviewed_moved", table_name="email_dead_letter_queue")
    op.drop_table("email_dead_letter_queue")
    op.drop_index("ix_email_queue_recipient_id", table_name="email_queue")
    op.drop_index("ix_email_queue_status_next_retry", table_name="email_queue")
    op.drop_table("email_queue")
    op.drop_table("email_provider_quota")
    op.drop_table("email_circuit_breaker_state")
    op.drop_table("email_providers")
