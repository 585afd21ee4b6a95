"""
EventSourceConfig model - where a poller worker reads events from.
"""
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Boolean, Text, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from eventrelay.database import Base


class EventSourceConfig(Base):
    __tablename__ = "event_sources"

    worker_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    table_name: Mapped[str] = mapped_column(String(200), nullable=False)
    column_mapping: Mapped[dict] = mapped_column(JSONB, default=dict)
    # None = the gateway's own database
    database_url: Mapped[Optional[str]] = mapped_column(Text)
    batch_size: Mapped[Optional[int]] = mapped_column(Integer)
    start_from_latest: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
