"""enhancement runs, webhooks and audit events

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "enhancement_runs",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("document_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("tier", sa.String(), nullable=False),
        sa.Column("current_stage", sa.String(), nullable=False),
        sa.Column("overall_status", sa.String(), nullable=False),
        sa.Column("stage_history", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_job_id", sa.String(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_enhancement_runs_document_id", "enhancement_runs", ["document_id"], unique=False)
    op.create_index("ix_enhancement_runs_user_id", "enhancement_runs", ["user_id"], unique=False)
    op.create_index("ix_enhancement_runs_current_stage", "enhancement_runs", ["current_stage"], unique=False)
    op.create_index(
        "ix_enhancement_runs_user_started",
        "enhancement_runs",
        ["user_id", "started_at"],
        unique=False,
    )

    op.create_table(
        "webhook_configs",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("secret", sa.String(), nullable=False),
        sa.Column("events", postgresql.JSONB(), nullable=False),
        sa.Column("headers", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("retry_policy", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("secret_rotated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_webhook_configs_owner_id", "webhook_configs", ["owner_id"], unique=False)

    op.create_table(
        "webhook_delivery_attempts",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("webhook_config_id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("http_status", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("response_excerpt", sa.Text(), nullable=True),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_webhook_delivery_attempts_webhook_config_id",
        "webhook_delivery_attempts",
        ["webhook_config_id"],
        unique=False,
    )
    op.create_index(
        "ix_webhook_delivery_attempts_event_type",
        "webhook_delivery_attempts",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        "ix_webhook_delivery_attempts_config_created",
        "webhook_delivery_attempts",
        ["webhook_config_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_webhook_delivery_attempts_owner_status",
        "webhook_delivery_attempts",
        ["owner_id", "status"],
        unique=False,
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"], unique=False)
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"], unique=False)
    op.create_index("ix_audit_events_owner_id", "audit_events", ["owner_id"], unique=False)
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_events_request_id", table_name="audit_events")
    op.drop_index("ix_audit_events_owner_id", table_name="audit_events")
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_index("ix_audit_events_occurred_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_webhook_delivery_attempts_owner_status", table_name="webhook_delivery_attempts")
    op.drop_index("ix_webhook_delivery_attempts_config_created", table_name="webhook_delivery_attempts")
    op.drop_index("ix_webhook_delivery_attempts_event_type", table_name="webhook_delivery_attempts")
    op.drop_index("ix_webhook_delivery_attempts_webhook_config_id", table_name="webhook_delivery_attempts")
    op.drop_table("webhook_delivery_attempts")
    op.drop_index("ix_webhook_configs_owner_id", table_name="webhook_configs")
    op.drop_table("webhook_configs")
    op.drop_index("ix_enhancement_runs_user_started", table_name="enhancement_runs")
    op.drop_index("ix_enhancement_runs_current_stage", table_name="enhancement_runs")
    op.drop_index("ix_enhancement_runs_user_id", table_name="enhancement_runs")
    op.drop_index("ix_enhancement_runs_document_id", table_name="enhancement_runs")
    op.drop_table("enhancement_runs")
