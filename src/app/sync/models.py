"""Sync bookkeeping persistence models.

- ChangeQueueEntryModel: Durable log of pending local/remote changes
- SyncCursorModel: Per entity type pull position and running totals
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import Base
from src.app.sync.clock import utcnow


class ChangeQueueEntryModel(Base):
    """One unit of sync work for one local record.

    Status walks pending -> processing -> processed | retry | error | skipped.
    locked_at is set only while a worker holds the entry.
    """

    __tablename__ = "change_queue"
    __table_args__ = (
        Index("ix_change_queue_ready", "status", "locked_at", "next_retry_at"),
        Index("ix_change_queue_local", "entity_type", "local_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    local_id: Mapped[int] = mapped_column(Integer, nullable=False)
    external_ref_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    external_guid: Mapped[str | None] = mapped_column(String(36), nullable=True)
    source: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default="pending", server_default="pending", nullable=False
    )
    retry_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )
    next_retry_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    locked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Python-side default keeps sub-second ordering on backends whose now() is coarse
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=utcnow, nullable=True
    )


class SyncCursorModel(Base):
    """Inbound pull position for one entity type."""

    __tablename__ = "sync_cursors"

    entity_type: Mapped[str] = mapped_column(String(50), primary_key=True)
    last_remote_modified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_sync_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    total_pulled: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    total_created: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    total_updated: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    total_errors: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
