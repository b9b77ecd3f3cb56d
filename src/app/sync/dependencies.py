"""Dependency Resolver -- make sure a remote parent exists locally and is fresh.

ensure(entity_type, remote_ref) answers "what is the global id of this
remote parent?", pulling the parent on the spot when the local copy is
missing, was never pulled, or is older than the remote one. Answers
(including failures, as None) are memoised on the SyncRunContext so one
run asks about each parent at most once.

During a dry run nothing is pulled: the answer is the local copy's global
id, or the one the remote parent carries.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.app.accounting.repository import AccountingRepository
from src.app.sync.clock import ensure_aware
from src.app.sync.context import MISSING, SyncRunContext
from src.app.sync.remote.directory import RemoteDirectory
from src.app.sync.remote.payloads import RemoteItem, parse_item
from src.app.sync.schemas import EntityType

if TYPE_CHECKING:
    from src.app.sync.inbound.base import AbstractPuller

logger = structlog.get_logger(__name__)


def needs_sync(
    local: Any | None,
    remote_modified_at: datetime | None,
    last_pushed_at: datetime | None = None,
) -> bool:
    """Decide whether a remote parent must be pulled before it is used.

    - No local counterpart: pull.
    - Remote carries no modification time: trust the local copy.
    - Remote state is the echo of our own push: trust the local copy.
    - Local copy was never pulled: pull.
    - Otherwise pull only when the remote side is newer.
    """
    if local is None:
        return True
    remote_modified_at = ensure_aware(remote_modified_at)
    if remote_modified_at is None:
        return False
    last_pushed_at = ensure_aware(last_pushed_at)
    if last_pushed_at is not None and last_pushed_at >= remote_modified_at:
        return False
    last_pulled_at = ensure_aware(local.last_pulled_at)
    if last_pulled_at is None:
        return True
    return remote_modified_at > last_pulled_at


class DependencyResolver:
    """Lazy, run-cached resolution of cross-entity references.

    Args:
        session_factory: Factory producing AsyncSession instances.
        directory: Remote directory used to fetch the parent item.
        context: Run context holding the memo.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        directory: RemoteDirectory,
        context: SyncRunContext,
    ) -> None:
        self._session_factory = session_factory
        self._directory = directory
        self._context = context
        self._pullers: dict[EntityType, AbstractPuller] = {}

    @property
    def dry_run(self) -> bool:
        return self._context.dry_run

    def register(self, puller: AbstractPuller) -> None:
        """Make a puller available for forced single-item pulls."""
        self._pullers[puller.entity_type] = puller

    async def ensure(self, entity_type: EntityType, remote_ref: str | int | None) -> str | None:
        """Return the local global id for a remote parent, pulling it if needed.

        Returns:
            The global id, or None when the parent cannot be found remotely
            or the forced pull fails. Callers turn None into
            DependencyNotReadyError.
        """
        if remote_ref in (None, "", 0):
            return None
        entity_type = EntityType(entity_type)

        cached = self._context.cached_dependency(entity_type, remote_ref)
        if cached is not MISSING:
            return cached

        try:
            global_id = await self._ensure(entity_type, remote_ref)
        except Exception as exc:
            logger.warning(
                "dependency.ensure_failed",
                entity_type=entity_type.value,
                remote_ref=remote_ref,
                error=str(exc),
            )
            global_id = None

        self._context.remember_dependency(entity_type, remote_ref, global_id)
        return global_id

    async def _ensure(self, entity_type: EntityType, remote_ref: str | int) -> str | None:
        raw = await self._directory.get(entity_type, remote_ref)
        if raw is None:
            logger.info(
                "dependency.remote_parent_missing",
                entity_type=entity_type.value,
                remote_ref=remote_ref,
            )
            return None

        item = parse_item(entity_type, raw)
        local = await self._find_local(entity_type, item)

        if self._context.dry_run:
            return local.global_id if local is not None else item.global_id
        if not needs_sync(local, item.updated_time, item.last_pushed_at):
            return local.global_id

        puller = self._pullers.get(entity_type)
        if puller is None:
            logger.warning("dependency.no_puller", entity_type=entity_type.value)
            return local.global_id if local is not None else None

        logger.info(
            "dependency.forced_pull",
            entity_type=entity_type.value,
            remote_ref=remote_ref,
            has_local=local is not None,
        )
        return await puller.sync_single_item(raw)

    async def _find_local(self, entity_type: EntityType, item: RemoteItem) -> Any | None:
        async with self._session_factory() as session:
            repo = AccountingRepository(session)
            local = await repo.find_by_external_id(entity_type, item.id)
            if local is None:
                local = await repo.find_by_global_id(entity_type, item.global_id)
            return local
