from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from viewsync.models.etl_source import EtlSource
from viewsync.pg_database import Base


class SyncStatus(str, Enum):
    PENDING = "PENDING"
    SYNCING = "SYNCING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"


class SyncedView(Base):
    __tablename__ = "synced_views"
    __table_args__ = (
        UniqueConstraint("source_id", "source_schema", "source_view", name="uq_synced_views_source_view"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("etl_sources.id", ondelete="CASCADE"), nullable=False
    )
    source_schema: Mapped[str] = mapped_column(String(128), nullable=False)
    source_view: Mapped[str] = mapped_column(String(128), nullable=False)
    dest_table: Mapped[str] = mapped_column(String(63), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=SyncStatus.PENDING.value, nullable=False)
    # Set while a sync holds the lease; compared against the staleness window
    sync_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_rows: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_sync_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    schema_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    source: Mapped[EtlSource] = relationship(lazy="joined")
