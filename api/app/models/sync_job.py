import uuid
from datetime import date, datetime

from sqlalchemy import JSON, Boolean, Date, DateTime, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base

PENDING = "pending"
RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"
CANCELLED = "cancelled"

ACTIVE_STATUSES = (PENDING, RUNNING)
TERMINAL_STATUSES = (SUCCEEDED, FAILED, CANCELLED)

FULL = "full"
INCREMENTAL = "incremental"
TARGETED = "targeted"
SYNC_TYPES = (FULL, INCREMENTAL, TARGETED)


class SyncJob(Base):
    """Durable record of one sync execution; terminal status is written exactly once."""
    __tablename__ = "sync_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    sync_type: Mapped[str] = mapped_column(String(20))
    kinds: Mapped[list] = mapped_column(JSON, default=list)
    scope_since: Mapped[date | None] = mapped_column(Date)
    status: Mapped[str] = mapped_column(String(20), default=PENDING, index=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    # TRUE while pending/running, NULL once terminal: at most one active job
    active_lock: Mapped[bool | None] = mapped_column(Boolean, unique=True, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    records_created: Mapped[int] = mapped_column(Integer, default=0)
    records_updated: Mapped[int] = mapped_column(Integer, default=0)
    records_removed: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
