"""AbstractPuller -- fetch remote changes and upsert them locally.

A puller owns one entity type. pull() lists every remote item changed
since the stored cursor, buffering the full listing first (global id
write-backs move items within the remote's modification-time order, which
would shift offset pages still to be read), then applies each item in its
own transaction:

1. Freshness filter: items without a modification time are skipped, and
   so are items whose "last pushed" stamp is not older than their
   modification time (our own echo).
2. Reconcile the local counterpart by external id, global id, then
   business key.
3. Remote deletions mark the local record deleted.
4. Otherwise apply fields, clear the deletion mark, stamp last_pulled_at
   and enqueue a REMOTE change entry in the same transaction.
5. A global id minted locally is written back to the remote item after
   commit (best-effort).

One item's failure is counted and logged, never propagated, so the rest
of the batch still applies. The cursor then advances per CursorPolicy.

pull(dry_run=True) runs steps 1-3 and the field mapping in a read-only
session and reports each item's action and column changes instead.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from datetime import datetime, timedelta
from functools import partial
from typing import Any, ClassVar

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.app.accounting.repository import AccountingRepository
from src.app.config import CursorPolicy, Settings
from src.app.core.monitoring import sync_pulled_items_total
from src.app.sync.clock import ensure_aware, utcnow
from src.app.sync.cursors import SyncCursorStore
from src.app.sync.dependencies import DependencyResolver
from src.app.sync.exceptions import DependencyNotReadyError, SyncError
from src.app.sync.queue import ChangeQueueStore
from src.app.sync.reconciliation import KeyCandidate, MatchKey, ReconciliationKeyResolver
from src.app.sync.remote.directory import RemoteDirectory
from src.app.sync.remote.payloads import RemoteItem, parse_item
from src.app.sync.schemas import (
    ChangeSource,
    EntityType,
    FieldChange,
    ItemResult,
    PullAction,
    PullStats,
)

logger = structlog.get_logger(__name__)


class AbstractPuller(ABC):
    """Base class for per-entity-type pullers.

    Subclasses set entity_type and implement map_to_local(); the other
    extract_* hooks have sensible defaults for crm.item payloads.

    Args:
        session_factory: Factory producing AsyncSession instances.
        directory: Remote directory for listing items and writing back ids.
        queue: Change queue store receiving REMOTE entries.
        cursors: Cursor store for this puller's entity type.
        reconciler: Key resolver pairing remote items with local rows.
        resolver: Dependency resolver for parent references.
        settings: Cursor policy and related configuration.
    """

    entity_type: ClassVar[EntityType]

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        directory: RemoteDirectory,
        queue: ChangeQueueStore,
        cursors: SyncCursorStore,
        reconciler: ReconciliationKeyResolver,
        resolver: DependencyResolver,
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._directory = directory
        self._queue = queue
        self._cursors = cursors
        self._reconciler = reconciler
        self._resolver = resolver
        self._settings = settings

    # ── Extraction hooks ────────────────────────────────────────────────────

    def fetch_changed_items(self, since: datetime | None) -> AsyncIterator[dict[str, Any]]:
        return self._directory.list_changed(self.entity_type, since)

    def parse(self, raw: dict[str, Any]) -> RemoteItem:
        return parse_item(self.entity_type, raw)

    def extract_external_id(self, item: RemoteItem) -> str | None:
        return str(item.id) if item.id is not None else None

    def extract_global_id(self, item: RemoteItem) -> str | None:
        return item.global_id

    def extract_remote_modified_at(self, item: RemoteItem) -> datetime | None:
        return ensure_aware(item.updated_time)

    def extract_last_pushed_stamp(self, item: RemoteItem) -> datetime | None:
        return ensure_aware(item.last_pushed_at)

    def business_key(self, item: RemoteItem) -> str | None:
        return None

    def is_deleted(self, item: RemoteItem) -> bool:
        return False

    @abstractmethod
    async def map_to_local(
        self, item: RemoteItem, repo: AccountingRepository
    ) -> dict[str, Any]:
        """Translate a remote payload into local column values.

        Raises:
            ValidationError: Mandatory data missing.
            DependencyNotReadyError: A parent reference cannot be resolved.
        """

    async def after_apply(
        self, entity: Any, item: RemoteItem, repo: AccountingRepository
    ) -> None:
        """Hook run inside the item transaction after the entity is saved."""

    # ── Filtering ───────────────────────────────────────────────────────────

    def should_import(self, item: RemoteItem) -> tuple[bool, str | None]:
        """Freshness filter; returns (import?, reason when not)."""
        modified = self.extract_remote_modified_at(item)
        if modified is None:
            return False, "no remote modification time"
        stamp = self.extract_last_pushed_stamp(item)
        if stamp is not None and stamp >= modified:
            return False, "remote change originates from our own push"
        return True, None

    # ── Pull ────────────────────────────────────────────────────────────────

    async def pull(self, *, dry_run: bool = False) -> PullStats:
        """Pull every item changed since the cursor and advance the cursor.

        Args:
            dry_run: Preview instead: each item's would-be action and column
                changes are collected in stats.previews, and nothing is
                written locally or remotely (the cursor stays put).
        """
        entity_type = self.entity_type.value
        since = await self._cursors.get(self.entity_type)
        stats = PullStats(dry_run=dry_run)
        batch_max: datetime | None = None
        contiguous_max: datetime | None = None
        failed = False

        logger.info(
            "inbound.pull_started", entity_type=entity_type, since=since, dry_run=dry_run
        )

        for raw in await self._collect_changed(since):
            modified = self._modified_of(raw)
            try:
                if dry_run:
                    result = await self._preview(raw)
                else:
                    result = await self._apply(raw, force=False)
            except Exception as exc:
                failed = True
                stats.total += 1
                stats.errors += 1
                if not dry_run:
                    sync_pulled_items_total.labels(entity_type=entity_type, action="error").inc()
                log = logger.warning if isinstance(exc, SyncError) else logger.exception
                log(
                    "inbound.item_failed",
                    entity_type=entity_type,
                    remote_id=raw.get("id"),
                    error=str(exc),
                )
            else:
                stats.record(result.action)
                if dry_run:
                    stats.previews.append(result)
                else:
                    sync_pulled_items_total.labels(
                        entity_type=entity_type, action=result.action.value
                    ).inc()

            if modified is not None:
                batch_max = modified if batch_max is None else max(batch_max, modified)
                if not failed:
                    contiguous_max = (
                        modified if contiguous_max is None else max(contiguous_max, modified)
                    )

        if dry_run:
            stats.cursor = since
        else:
            position = (
                contiguous_max
                if self._settings.SYNC_CURSOR_POLICY == CursorPolicy.contiguous
                else batch_max
            )
            stats.cursor = await self._cursors.advance(self.entity_type, position, stats)

        logger.info(
            "inbound.pull_complete",
            entity_type=entity_type,
            total=stats.total,
            created=stats.created,
            updated=stats.updated,
            skipped=stats.skipped,
            deleted=stats.deleted,
            errors=stats.errors,
            cursor=stats.cursor,
            dry_run=dry_run,
        )
        return stats

    async def sync_single_item(self, raw: dict[str, Any]) -> str | None:
        """Force-apply one remote item, bypassing the freshness filter.

        Returns:
            Global id of the resulting local record (None if it was skipped).
        """
        result = await self._apply(raw, force=True)
        return result.global_id

    # ── Internals ───────────────────────────────────────────────────────────

    async def _collect_changed(self, since: datetime | None) -> list[dict[str, Any]]:
        """The whole listing, deduplicated by remote id, in listing order."""
        items: dict[Any, dict[str, Any]] = {}
        async for raw in self.fetch_changed_items(since):
            items[raw.get("id")] = raw
        return list(items.values())

    def _modified_of(self, raw: dict[str, Any]) -> datetime | None:
        try:
            return self.extract_remote_modified_at(self.parse(raw))
        except ValueError:
            return None

    async def _preview(self, raw: dict[str, Any]) -> ItemResult:
        """What _apply() would do with an item, computed in a read-only session."""
        item = self.parse(raw)
        should, reason = self.should_import(item)
        if not should:
            return ItemResult(action=PullAction.SKIPPED, remote_id=item.id, reason=reason)

        async with self._session_factory() as session:
            repo = AccountingRepository(session)
            entity = await self._reconcile(item, repo)

            if self.is_deleted(item):
                if entity is None:
                    return ItemResult(
                        action=PullAction.SKIPPED,
                        remote_id=item.id,
                        reason="deleted remotely, unknown locally",
                    )
                return ItemResult(
                    action=PullAction.DELETED,
                    remote_id=item.id,
                    local_id=entity.id,
                    global_id=entity.global_id,
                    changes=_diff(entity, {"deletion_mark": True}),
                )

            fields = await self.map_to_local(item, repo)
            if entity is None:
                return ItemResult(
                    action=PullAction.CREATED,
                    remote_id=item.id,
                    global_id=self.extract_global_id(item),
                    changes=_diff(None, fields),
                )
            return ItemResult(
                action=PullAction.UPDATED,
                remote_id=item.id,
                local_id=entity.id,
                global_id=entity.global_id,
                changes=_diff(entity, fields),
            )

    async def _apply(self, raw: dict[str, Any], *, force: bool) -> ItemResult:
        item = self.parse(raw)

        if not force:
            should, reason = self.should_import(item)
            if not should:
                logger.debug(
                    "inbound.item_filtered",
                    entity_type=self.entity_type.value,
                    remote_id=item.id,
                    reason=reason,
                )
                return ItemResult(action=PullAction.SKIPPED, reason=reason)

        external_id = self.extract_external_id(item)
        remote_global_id = self.extract_global_id(item)
        minted_global_id: str | None = None

        async with self._session_factory() as session, session.begin():
            repo = AccountingRepository(session)
            entity = await self._reconcile(item, repo)

            if self.is_deleted(item):
                if entity is None:
                    return ItemResult(
                        action=PullAction.SKIPPED, reason="deleted remotely, unknown locally"
                    )
                entity.last_pulled_at = utcnow()
                await repo.soft_delete(entity)
                await self._enqueue(entity, external_id, session)
                return ItemResult(
                    action=PullAction.DELETED, local_id=entity.id, global_id=entity.global_id
                )

            created = entity is None
            fields = await self.map_to_local(item, repo)
            if created:
                entity = repo.new(self.entity_type)
            for name, value in fields.items():
                setattr(entity, name, value)

            entity.external_ref_id = external_id
            if not entity.global_id:
                entity.global_id = remote_global_id or str(uuid.uuid4())
                if not remote_global_id:
                    minted_global_id = entity.global_id
            elif remote_global_id and remote_global_id != entity.global_id:
                logger.warning(
                    "inbound.global_id_mismatch",
                    entity_type=self.entity_type.value,
                    local_global_id=entity.global_id,
                    remote_global_id=remote_global_id,
                )
            entity.deletion_mark = False
            entity.last_pulled_at = utcnow()

            await repo.save(entity)
            await self.after_apply(entity, item, repo)
            await self._enqueue(entity, external_id, session)
            result = ItemResult(
                action=PullAction.CREATED if created else PullAction.UPDATED,
                local_id=entity.id,
                global_id=entity.global_id,
            )

        if minted_global_id and external_id:
            await self._write_back_global_id(external_id, minted_global_id)
        return result

    async def _reconcile(self, item: RemoteItem, repo: AccountingRepository) -> Any | None:
        match = await self._reconciler.resolve(
            [
                KeyCandidate(
                    MatchKey.EXTERNAL_ID,
                    self.extract_external_id(item),
                    partial(repo.find_by_external_id, self.entity_type),
                ),
                KeyCandidate(
                    MatchKey.GLOBAL_ID,
                    self.extract_global_id(item),
                    partial(repo.find_by_global_id, self.entity_type),
                ),
                KeyCandidate(
                    MatchKey.BUSINESS_KEY,
                    self.business_key(item),
                    partial(repo.find_by_business_key, self.entity_type),
                ),
            ],
            entity_type=self.entity_type.value,
        )
        return match.target if match is not None else None

    async def _enqueue(self, entity: Any, external_id: str | None, session: AsyncSession) -> None:
        await self._queue.enqueue(
            self.entity_type,
            entity.id,
            ChangeSource.REMOTE,
            external_ref_id=external_id,
            external_guid=entity.global_id,
            session=session,
        )

    async def _write_back_global_id(self, external_id: str, global_id: str) -> None:
        pushed_at = utcnow() + timedelta(seconds=self._settings.SYNC_PUSH_STAMP_LEAD_SECONDS)
        try:
            await self._directory.write_global_id(
                self.entity_type, external_id, global_id, pushed_at
            )
        except SyncError as exc:
            logger.warning(
                "inbound.global_id_write_back_failed",
                entity_type=self.entity_type.value,
                remote_id=external_id,
                global_id=global_id,
                error=exc.message,
            )
        else:
            logger.info(
                "inbound.global_id_written_back",
                entity_type=self.entity_type.value,
                remote_id=external_id,
                global_id=global_id,
            )

    async def _require_parent(
        self,
        parent_type: EntityType,
        remote_ref: int | str | None,
        repo: AccountingRepository,
    ) -> Any:
        """Ensure a remote parent exists locally and return the local row.

        In a dry run a parent known only remotely is returned as an unsaved
        row carrying its global id.
        """
        global_id = await self._resolver.ensure(parent_type, remote_ref)
        parent = await repo.find_by_global_id(parent_type, global_id) if global_id else None
        if parent is None and global_id and self._resolver.dry_run:
            return repo.new(parent_type, global_id=global_id, external_ref_id=str(remote_ref))
        if parent is None:
            raise DependencyNotReadyError(
                f"{parent_type.value} {remote_ref} could not be resolved locally"
            )
        return parent


def _diff(entity: Any | None, fields: dict[str, Any]) -> dict[str, FieldChange]:
    """Columns whose incoming value differs from the entity's current one."""
    changes: dict[str, FieldChange] = {}
    for name, new in fields.items():
        old = getattr(entity, name, None) if entity is not None else None
        if isinstance(old, datetime) and isinstance(new, datetime):
            same = ensure_aware(old) == ensure_aware(new)
        else:
            same = old == new
        if not same:
            changes[name] = FieldChange(old=old, new=new)
    return changes
