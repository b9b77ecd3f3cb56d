"""Outbound sync pipeline -- drain LOCAL change queue entries to the remote CRM.

Entries are drained oldest first. Each one runs under the supervisor
(lock, classify, unlock) with the processor inside its own local
transaction. Between entries the pipeline waits out the remainder of the
per-request budget and checks the run's stop signal.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.app.config import Settings
from src.app.sync.context import SyncRunContext
from src.app.sync.exceptions import ValidationError
from src.app.sync.outbound.base import OutboundProcessor
from src.app.sync.queue import ChangeQueueStore
from src.app.sync.schemas import (
    ChangeQueueEntryRead,
    ChangeSource,
    DrainStats,
    EntityType,
    SyncStatus,
)
from src.app.sync.supervisor import LockRetrySupervisor

logger = structlog.get_logger(__name__)


class OutboundSyncPipeline:
    """Push queued local changes through the registered processors.

    Args:
        session_factory: Factory producing AsyncSession instances.
        queue: Change queue store to drain.
        supervisor: Supervisor deciding each entry's outcome.
        processors: One processor per entity type.
        context: Run context carrying the stop signal.
        settings: Drain limit and request rate.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        queue: ChangeQueueStore,
        supervisor: LockRetrySupervisor,
        processors: Iterable[OutboundProcessor],
        context: SyncRunContext,
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._queue = queue
        self._supervisor = supervisor
        self._processors: dict[EntityType, OutboundProcessor] = {
            processor.entity_type: processor for processor in processors
        }
        self._context = context
        self._settings = settings

    async def process(self, entry: ChangeQueueEntryRead) -> SyncStatus | None:
        """Process one entry under lock; None when it could not be locked."""
        return await self._supervisor.run(entry, self._push)

    async def _push(self, entry: ChangeQueueEntryRead) -> int:
        processor = self._processors.get(entry.entity_type)
        if processor is None:
            raise ValidationError(f"No outbound processor for {entry.entity_type.value}")
        async with self._session_factory() as session, session.begin():
            return await processor.process(entry, session)

    async def drain_queue(
        self,
        entity_types: Iterable[EntityType] | None = None,
        source: ChangeSource = ChangeSource.LOCAL,
        limit: int | None = None,
    ) -> DrainStats:
        """Process ready entries oldest first until the batch or a stop request ends.

        Only LOCAL entries are pushed: REMOTE entries describe changes that
        came from the CRM and are left for the accounting-side exchange.
        """
        if ChangeSource(source) != ChangeSource.LOCAL:
            raise ValueError("Only LOCAL change queue entries can be pushed to the remote CRM")

        limit = limit or self._settings.SYNC_DRAIN_LIMIT
        entries = await self._queue.claim_batch(entity_types, source, limit)
        stats = DrainStats()
        delay = self._settings.inter_entry_delay
        loop = asyncio.get_running_loop()

        logger.info("outbound.drain_started", ready=len(entries), limit=limit)

        for index, entry in enumerate(entries):
            if self._context.stop_requested:
                stats.stopped = True
                break

            started = loop.time()
            stats.record(await self.process(entry))

            if index == len(entries) - 1:
                break
            remaining = delay - (loop.time() - started)
            if await self._context.wait_or_stop(remaining):
                stats.stopped = True
                break

        logger.info(
            "outbound.drain_complete",
            total=stats.total,
            processed=stats.processed,
            errors=stats.errors,
            skipped=stats.skipped,
            retried=stats.retried,
            not_locked=stats.not_locked,
            stopped=stats.stopped,
        )
        return stats
