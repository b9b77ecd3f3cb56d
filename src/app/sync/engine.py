"""SyncEngine -- orchestration facade over the inbound and outbound pipelines.

Wires the change queue, cursors, reconciliation, supervisor, remote
directory, dependency resolver, pullers and processors for one remote CRM,
and exposes the operations the scheduler and the CLI call:

- pull(entity_type) / pull_all(), optionally as a dry-run preview
- drain_queue(entity_types, source, limit)
- run_cycle(): reclaim stale locks -> pull every type -> drain LOCAL entries
- reclaim_stale(), queue_stats(), requeue(entry_id)
"""

from __future__ import annotations

from collections.abc import Iterable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.app.config import Settings
from src.app.sync.context import SyncRunContext
from src.app.sync.cursors import SyncCursorStore
from src.app.sync.dependencies import DependencyResolver
from src.app.sync.inbound.pipeline import InboundPullPipeline
from src.app.sync.inbound.pullers import DEFAULT_PULLERS
from src.app.sync.outbound.pipeline import OutboundSyncPipeline
from src.app.sync.outbound.processors import DEFAULT_PROCESSORS
from src.app.sync.queue import ChangeQueueStore
from src.app.sync.reconciliation import ReconciliationKeyResolver
from src.app.sync.remote.client import RemoteApi
from src.app.sync.remote.directory import RemoteDirectory
from src.app.sync.schemas import (
    ChangeSource,
    DrainStats,
    EntityType,
    PullStats,
    QueueStats,
    SyncCycleResult,
)
from src.app.sync.supervisor import LockRetrySupervisor

logger = structlog.get_logger(__name__)


class SyncEngine:
    """Bidirectional sync between the local accounting tables and the remote CRM.

    Args:
        session_factory: Factory producing AsyncSession instances.
        api: Remote CRM client implementing call(method, params).
        settings: Sync configuration.
        context: Run context; a fresh one is created when omitted.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        api: RemoteApi,
        settings: Settings,
        context: SyncRunContext | None = None,
    ) -> None:
        self._settings = settings
        self.context = context or SyncRunContext()

        self.queue = ChangeQueueStore(session_factory, settings)
        self.cursors = SyncCursorStore(session_factory)
        self.reconciler = ReconciliationKeyResolver(settings.SYNC_DUPLICATE_KEY_POLICY)
        self.supervisor = LockRetrySupervisor(self.queue)
        self.directory = RemoteDirectory(api, self.context)
        self.resolver = DependencyResolver(session_factory, self.directory, self.context)

        pullers = [
            puller_cls(
                session_factory=session_factory,
                directory=self.directory,
                queue=self.queue,
                cursors=self.cursors,
                reconciler=self.reconciler,
                resolver=self.resolver,
                settings=settings,
            )
            for puller_cls in DEFAULT_PULLERS
        ]
        for puller in pullers:
            self.resolver.register(puller)
        self.inbound = InboundPullPipeline(pullers)

        self.outbound = OutboundSyncPipeline(
            session_factory=session_factory,
            queue=self.queue,
            supervisor=self.supervisor,
            processors=[
                processor_cls(
                    directory=self.directory,
                    resolver=self.resolver,
                    reconciler=self.reconciler,
                    settings=settings,
                )
                for processor_cls in DEFAULT_PROCESSORS
            ],
            context=self.context,
            settings=settings,
        )

    # ── Inbound ─────────────────────────────────────────────────────────────

    async def pull(self, entity_type: EntityType, dry_run: bool = False) -> PullStats:
        if not dry_run:
            return await self.inbound.pull(entity_type)
        with self.context.preview():
            return await self.inbound.pull(entity_type, dry_run=True)

    async def pull_all(self, dry_run: bool = False) -> dict[EntityType, PullStats]:
        if not dry_run:
            return await self.inbound.pull_all()
        with self.context.preview():
            return await self.inbound.pull_all(dry_run=True)

    # ── Outbound ────────────────────────────────────────────────────────────

    async def drain_queue(
        self,
        entity_types: Iterable[EntityType] | None = None,
        source: ChangeSource = ChangeSource.LOCAL,
        limit: int | None = None,
    ) -> DrainStats:
        return await self.outbound.drain_queue(entity_types, source, limit)

    # ── Queue maintenance ───────────────────────────────────────────────────

    async def reclaim_stale(self) -> int:
        return await self.queue.reclaim_stale()

    async def queue_stats(self) -> QueueStats:
        return await self.queue.stats()

    async def requeue(self, entry_id: int) -> bool:
        return await self.queue.requeue(entry_id)

    # ── Cycle ───────────────────────────────────────────────────────────────

    async def run_cycle(self, limit: int | None = None) -> SyncCycleResult:
        """One full sync run with fresh run-scoped caches."""
        self.context.clear()
        result = SyncCycleResult()

        result.reclaimed = await self.reclaim_stale()
        if not self.context.stop_requested:
            result.pulled = await self.pull_all()
        if not self.context.stop_requested:
            result.drained = await self.drain_queue(limit=limit)

        logger.info(
            "sync.cycle_complete",
            reclaimed=result.reclaimed,
            pulled={k.value: v.total for k, v in result.pulled.items()},
            pushed=result.drained.processed,
            errors=result.drained.errors,
            stopped=self.context.stop_requested,
        )
        return result
