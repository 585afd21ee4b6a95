"""
DeliveryRule model - binds an event type to a target, transform, auth,
delivery mode and retry policy. Edited in place with a version bump; every
edit leaves a DeliveryRuleVersion snapshot. Disabled, never hard-deleted,
while attempt logs reference it.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Boolean, Text, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from eventrelay.database import Base
from eventrelay.schemas.rules import (
    parse_auth,
    parse_delivery_mode,
    parse_rate_limit,
    parse_retry_policy,
    parse_transform,
)


class DeliveryRule(Base):
    __tablename__ = "delivery_rules"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    # NULL tenant = global default rule, applies to every tenant without an override
    tenant_id: Mapped[Optional[str]] = mapped_column(String(64))
    overrides_rule_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("delivery_rules.id")
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)  # exact or "*"
    condition: Mapped[Optional[str]] = mapped_column(Text)

    target_url: Mapped[str] = mapped_column(Text, nullable=False)
    http_method: Mapped[str] = mapped_column(String(10), default="POST", nullable=False)
    content_type: Mapped[str] = mapped_column(
        String(80), default="application/json", nullable=False
    )
    timeout_ms: Mapped[int] = mapped_column(Integer, default=10000, nullable=False)

    auth: Mapped[dict] = mapped_column(JSONB, default=dict)
    transform: Mapped[dict] = mapped_column(JSONB, default=dict)
    delivery_mode: Mapped[dict] = mapped_column(JSONB, default=dict)
    retry_policy: Mapped[dict] = mapped_column(JSONB, default=dict)
    rate_limit: Mapped[Optional[dict]] = mapped_column(JSONB)

    signing_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    signing_secrets: Mapped[list] = mapped_column(JSONB, default=list)  # [primary, *grace]

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Circuit breaker: CLOSED -> OPEN after N consecutive failures -> HALF_OPEN
    # (one trial delivery) after the recovery time -> CLOSED on success
    circuit_state: Mapped[str] = mapped_column(String(10), default="CLOSED", nullable=False)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    circuit_opened_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_delivery_rules_match", "tenant_id", "event_type", "is_active"),
    )

    def auth_config(self):
        return parse_auth(self.auth)

    def transform_config(self):
        return parse_transform(self.transform)

    def mode_config(self):
        return parse_delivery_mode(self.delivery_mode)

    def retry_config(self):
        return parse_retry_policy(self.retry_policy)

    def rate_limit_config(self):
        return parse_rate_limit(self.rate_limit)

    def snapshot(self) -> dict:
        """Serializable copy of the editable fields."""
        return {
            "tenant_id": self.tenant_id,
            "overrides_rule_id": str(self.overrides_rule_id) if self.overrides_rule_id else None,
            "name": self.name,
            "event_type": self.event_type,
            "condition": self.condition,
            "target_url": self.target_url,
            "http_method": self.http_method,
            "content_type": self.content_type,
            "timeout_ms": self.timeout_ms,
            "auth": self.auth,
            "transform": self.transform,
            "delivery_mode": self.delivery_mode,
            "retry_policy": self.retry_policy,
            "rate_limit": self.rate_limit,
            "signing_enabled": self.signing_enabled,
            "signing_secrets": list(self.signing_secrets or []),
            "is_active": self.is_active,
        }

    def __repr__(self) -> str:
        return f"<DeliveryRule {self.name} v{self.version} ({self.event_type})>"


class DeliveryRuleVersion(Base):
    __tablename__ = "delivery_rule_versions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    rule_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("delivery_rules.id"), nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    snapshot: Mapped[dict] = mapped_column(JSONB, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        UniqueConstraint("rule_id", "version", name="uq_rule_version"),
    )
