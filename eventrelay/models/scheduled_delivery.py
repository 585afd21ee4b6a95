"""
ScheduledDelivery model - a delivery that fires at scheduled_for instead of
when its event arrives. Created by delayed/recurring rules or by a transform
script. Recurring rows chain: each fired row inserts its successor.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, BigInteger, Text, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from eventrelay.database import Base


class ScheduledDelivery(Base):
    __tablename__ = "scheduled_deliveries"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rule_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("delivery_rules.id"), nullable=False
    )
    event_id: Mapped[Optional[int]] = mapped_column(BigInteger)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    origin: Mapped[str] = mapped_column(String(20), default="rule", nullable=False)  # rule, script
    # Occurrence n of a series is stored under "{series_key}:{n}"; unique per rule
    series_key: Mapped[str] = mapped_column(String(200), nullable=False)
    dedup_key: Mapped[str] = mapped_column(String(220), nullable=False)

    payload: Mapped[Optional[dict]] = mapped_column(JSONB)
    # True when payload is already the outbound body (script-scheduled)
    pre_transformed: Mapped[bool] = mapped_column(default=False, nullable=False)

    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default="PENDING", nullable=False
    )  # PENDING, FIRED, CANCELLED

    # Recurrence: occurrence is 1-based; None limits mean unbounded on that axis
    occurrence: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    max_occurrences: Mapped[Optional[int]] = mapped_column(Integer)
    interval_seconds: Mapped[Optional[int]] = mapped_column(Integer)
    cron: Mapped[Optional[str]] = mapped_column(String(100))
    end_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    parent_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))

    attempt_log_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    fired_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_reason: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        UniqueConstraint("rule_id", "dedup_key", name="uq_schedule_rule_dedup"),
        Index("ix_scheduled_deliveries_due", "status", "scheduled_for"),
        Index("ix_scheduled_deliveries_tenant", "tenant_id", "status"),
    )

    @property
    def is_recurring(self) -> bool:
        return bool(self.interval_seconds or self.cron)

    def __repr__(self) -> str:
        return f"<ScheduledDelivery {str(self.id)[:8]} #{self.occurrence} ({self.status})>"
