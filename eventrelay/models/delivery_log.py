"""
DeliveryAttemptLog model - one row per (event, rule) pairing, updated in place
across every attempt. Retries and replays never create a second row: the
unique (rule_id, dedup_key) constraint makes duplicate inserts fail.

Claims: an attempt starts with a conditional UPDATE moving the row from a due
status (PENDING/RETRYING) with a known attempt_count to IN_PROGRESS. Only the
worker whose update hits exactly one row may deliver.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, BigInteger, Text, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from eventrelay.database import Base


class DeliveryAttemptLog(Base):
    __tablename__ = "delivery_attempt_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rule_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("delivery_rules.id"), nullable=False
    )
    rule_version: Mapped[int] = mapped_column(Integer, default=1)

    # Source event reference (None for script-created schedules without an event)
    event_id: Mapped[Optional[int]] = mapped_column(BigInteger)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    # "event:{tenant}:{id}" for live events, "schedule:{id}" for fired schedules
    dedup_key: Mapped[str] = mapped_column(String(200), nullable=False)
    trigger: Mapped[str] = mapped_column(String(20), default="event", nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default="PENDING", nullable=False
    )  # PENDING, IN_PROGRESS, RETRYING, SUCCESS, SKIPPED, ABANDONED, FAILED
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    last_http_status: Mapped[Optional[int]] = mapped_column(Integer)
    last_error_message: Mapped[Optional[str]] = mapped_column(Text)
    error_category: Mapped[Optional[str]] = mapped_column(String(30))
    response_snippet: Mapped[Optional[str]] = mapped_column(Text)
    latency_ms: Mapped[Optional[int]] = mapped_column(Integer)

    # None is stored as SQL NULL so replay can test IS NULL
    original_payload: Mapped[Optional[dict]] = mapped_column(JSONB(none_as_null=True))
    transformed_payload: Mapped[Optional[dict]] = mapped_column(JSONB(none_as_null=True))
    request_headers: Mapped[Optional[dict]] = mapped_column(JSONB)  # redacted

    claimed_by: Mapped[Optional[str]] = mapped_column(String(100))
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("rule_id", "dedup_key", name="uq_attempt_rule_dedup"),
        Index("ix_attempt_logs_due", "status", "next_retry_at"),
        Index("ix_attempt_logs_tenant_status", "tenant_id", "status", "error_category"),
    )

    def __repr__(self) -> str:
        return f"<DeliveryAttemptLog {str(self.id)[:8]} {self.status} {self.attempt_count}/{self.max_retries}>"
