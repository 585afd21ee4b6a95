"""
WorkerCheckpoint model - last fully dispatched source id per worker identity.
"""
from datetime import datetime, timezone
from sqlalchemy import String, BigInteger, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from eventrelay.database import Base


class WorkerCheckpoint(Base):
    __tablename__ = "worker_checkpoints"

    worker_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    last_processed_id: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        return f"<WorkerCheckpoint {self.worker_id}@{self.last_processed_id}>"
