"""Sync cursor store -- per entity type pull positions.

Owned by the inbound pipeline. The stored position never moves
backwards: advance() keeps the later of the stored and proposed values.
"""

from __future__ import annotations

from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.app.sync.clock import ensure_aware, utcnow
from src.app.sync.models import SyncCursorModel
from src.app.sync.schemas import EntityType, PullStats

logger = structlog.get_logger(__name__)


class SyncCursorStore:
    """Read and advance pull cursors.

    Args:
        session_factory: Factory producing AsyncSession instances.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, entity_type: EntityType) -> datetime | None:
        """Last applied remote modification time, or None before the first pull."""
        async with self._session_factory() as session:
            model = await session.get(SyncCursorModel, EntityType(entity_type).value)
            if model is None:
                return None
            return ensure_aware(model.last_remote_modified_at)

    async def advance(
        self,
        entity_type: EntityType,
        position: datetime | None,
        stats: PullStats | None = None,
    ) -> datetime | None:
        """Move the cursor forward and fold a batch into the running totals.

        Args:
            entity_type: Cursor to update.
            position: Proposed new position; ignored when older than the
                stored one or None.
            stats: Batch counters to add to the running totals.

        Returns:
            The cursor position after the update.
        """
        key = EntityType(entity_type).value
        async with self._session_factory() as session, session.begin():
            model = await session.get(SyncCursorModel, key)
            if model is None:
                model = SyncCursorModel(
                    entity_type=key,
                    total_pulled=0,
                    total_created=0,
                    total_updated=0,
                    total_errors=0,
                )
                session.add(model)

            current = ensure_aware(model.last_remote_modified_at)
            position = ensure_aware(position)
            if position is not None and (current is None or position > current):
                model.last_remote_modified_at = position
                current = position

            model.last_sync_at = utcnow()
            if stats is not None:
                model.total_pulled += stats.total
                model.total_created += stats.created
                model.total_updated += stats.updated
                model.total_errors += stats.errors

        logger.debug("cursor.advanced", entity_type=key, position=current)
        return current
