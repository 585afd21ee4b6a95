"""Initial schema: all tables for EventRelay.

Revision ID: 001
Revises:
Create Date: 2026-10-17
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Tenants
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("rate_limit_max_requests", sa.Integer),
        sa.Column("rate_limit_window_ms", sa.Integer),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Delivery rules (tenant_id NULL = global default)
    op.create_table(
        "delivery_rules",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", sa.String(64)),
        sa.Column(
            "overrides_rule_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("delivery_rules.id"),
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("condition", sa.Text),
        sa.Column("target_url", sa.Text, nullable=False),
        sa.Column("http_method", sa.String(10), nullable=False, server_default="POST"),
        sa.Column("content_type", sa.String(80), nullable=False, server_default="application/json"),
        sa.Column("timeout_ms", sa.Integer, nullable=False, server_default="10000"),
        sa.Column("auth", postgresql.JSONB, default={}),
        sa.Column("transform", postgresql.JSONB, default={}),
        sa.Column("delivery_mode", postgresql.JSONB, default={}),
        sa.Column("retry_policy", postgresql.JSONB, default={}),
        sa.Column("rate_limit", postgresql.JSONB),
        sa.Column("signing_enabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("signing_secrets", postgresql.JSONB, default=[]),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_delivery_rules_match", "delivery_rules", ["tenant_id", "event_type", "is_active"])

    op.create_table(
        "delivery_rule_versions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "rule_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("delivery_rules.id"), nullable=False,
        ),
        sa.Column("version", sa.Integer, nullable=False),
        sa.Column("snapshot", postgresql.JSONB, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("rule_id", "version", name="uq_rule_version"),
    )

    # Attempt logs - one row per (event, rule), updated in place
    op.create_table(
        "delivery_attempt_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column(
            "rule_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("delivery_rules.id"), nullable=False,
        ),
        sa.Column("rule_version", sa.Integer, server_default="1"),
        sa.Column("event_id", sa.BigInteger),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("dedup_key", sa.String(200), nullable=False),
        sa.Column("trigger", sa.String(20), nullable=False, server_default="event"),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="3"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True)),
        sa.Column("last_http_status", sa.Integer),
        sa.Column("last_error_message", sa.Text),
        sa.Column("error_category", sa.String(30)),
        sa.Column("response_snippet", sa.Text),
        sa.Column("latency_ms", sa.Integer),
        sa.Column("original_payload", postgresql.JSONB),
        sa.Column("transformed_payload", postgresql.JSONB),
        sa.Column("request_headers", postgresql.JSONB),
        sa.Column("claimed_by", sa.String(100)),
        sa.Column("claimed_at", sa.DateTime(timezone=True)),
        sa.Column("correlation_id", sa.String(64)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("rule_id", "dedup_key", name="uq_attempt_rule_dedup"),
    )
    op.create_index("ix_attempt_logs_due", "delivery_attempt_logs", ["status", "next_retry_at"])
    op.create_index(
        "ix_attempt_logs_tenant_status", "delivery_attempt_logs",
        ["tenant_id", "status", "error_category"],
    )

    # Delayed / recurring deliveries
    op.create_table(
        "scheduled_deliveries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column(
            "rule_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("delivery_rules.id"), nullable=False,
        ),
        sa.Column("event_id", sa.BigInteger),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("origin", sa.String(20), nullable=False, server_default="rule"),
        sa.Column("series_key", sa.String(200), nullable=False),
        sa.Column("dedup_key", sa.String(220), nullable=False),
        sa.Column("payload", postgresql.JSONB),
        sa.Column("pre_transformed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("occurrence", sa.Integer, nullable=False, server_default="1"),
        sa.Column("max_occurrences", sa.Integer),
        sa.Column("interval_seconds", sa.Integer),
        sa.Column("cron", sa.String(100)),
        sa.Column("end_at", sa.DateTime(timezone=True)),
        sa.Column("parent_id", postgresql.UUID(as_uuid=True)),
        sa.Column("attempt_log_id", postgresql.UUID(as_uuid=True)),
        sa.Column("fired_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_reason", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("rule_id", "dedup_key", name="uq_schedule_rule_dedup"),
    )
    op.create_index("ix_scheduled_deliveries_due", "scheduled_deliveries", ["status", "scheduled_for"])
    op.create_index("ix_scheduled_deliveries_tenant", "scheduled_deliveries", ["tenant_id", "status"])

    # Poller state
    op.create_table(
        "worker_checkpoints",
        sa.Column("worker_id", sa.String(100), primary_key=True),
        sa.Column("last_processed_id", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_table(
        "event_sources",
        sa.Column("worker_id", sa.String(100), primary_key=True),
        sa.Column("table_name", sa.String(200), nullable=False),
        sa.Column("column_mapping", postgresql.JSONB, default={}),
        sa.Column("database_url", sa.Text),
        sa.Column("batch_size", sa.Integer),
        sa.Column("start_from_latest", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Tenant code lookup tables
    op.create_table(
        "lookup_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("lookup_type", sa.String(100), nullable=False),
        sa.Column("source_code", sa.String(255), nullable=False),
        sa.Column("target_code", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "lookup_type", "source_code", name="uq_lookup_code"),
    )


def downgrade() -> None:
    op.drop_table("lookup_entries")
    op.drop_table("event_sources")
    op.drop_table("worker_checkpoints")
    op.drop_table("scheduled_deliveries")
    op.drop_table("delivery_attempt_logs")
    op.drop_table("delivery_rule_versions")
    op.drop_table("delivery_rules")
    op.drop_table("tenants")
