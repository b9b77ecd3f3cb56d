"""Change Queue Store -- durable log of pending sync work.

Every status transition runs in its own short transaction so that the
bookkeeping survives a rollback of the per-entry business transaction.
Entries are locked with a conditional UPDATE: a lock succeeds only when
the entry is still ready and no other entry for the same local record is
processing.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from src.app.config import Settings
from src.app.core.monitoring import sync_stale_locks_reclaimed_total
from src.app.sync.clock import utcnow
from src.app.sync.models import ChangeQueueEntryModel
from src.app.sync.schemas import (
    ChangeQueueEntryRead,
    ChangeSource,
    EntityType,
    QueueStats,
    SyncStatus,
)

logger = structlog.get_logger(__name__)

_READY_STATUSES = (SyncStatus.PENDING.value, SyncStatus.RETRY.value)
_MAX_ERROR_LENGTH = 2000


def _truncate(reason: str | None) -> str | None:
    if reason is None:
        return None
    return reason[:_MAX_ERROR_LENGTH]


def _ready_clause(now: datetime):
    """Pending/retry, unlocked and due."""
    return and_(
        ChangeQueueEntryModel.status.in_(_READY_STATUSES),
        ChangeQueueEntryModel.locked_at.is_(None),
        or_(
            ChangeQueueEntryModel.next_retry_at.is_(None),
            ChangeQueueEntryModel.next_retry_at <= now,
        ),
    )


class ChangeQueueStore:
    """Async persistence for change queue entries.

    Args:
        session_factory: Factory producing AsyncSession instances.
        settings: Retry budget and back-off configuration.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings

    # ── Writes ──────────────────────────────────────────────────────────────

    async def enqueue(
        self,
        entity_type: EntityType,
        local_id: int,
        source: ChangeSource,
        *,
        external_ref_id: str | int | None = None,
        external_guid: str | None = None,
        session: AsyncSession | None = None,
    ) -> int:
        """Append a pending entry.

        Args:
            entity_type: Local aggregate type of the changed record.
            local_id: Local primary key of the changed record.
            source: Which side produced the change.
            external_ref_id: Remote CRM id, when known.
            external_guid: Global id, when known.
            session: When given, the entry joins the caller's transaction so
                it commits (or rolls back) together with the local write.

        Returns:
            The new entry id.
        """
        entry = ChangeQueueEntryModel(
            entity_type=EntityType(entity_type).value,
            local_id=local_id,
            source=ChangeSource(source).value,
            external_ref_id=str(external_ref_id) if external_ref_id is not None else None,
            external_guid=external_guid,
            status=SyncStatus.PENDING.value,
            retry_count=0,
        )
        if session is not None:
            session.add(entry)
            await session.flush()
        else:
            async with self._session_factory() as own_session, own_session.begin():
                own_session.add(entry)
                await own_session.flush()

        logger.debug(
            "queue.enqueued",
            entry_id=entry.id,
            entity_type=entry.entity_type,
            local_id=local_id,
            source=entry.source,
        )
        return entry.id

    async def lock(self, entry: ChangeQueueEntryRead | int) -> bool:
        """Try to take exclusive ownership of an entry.

        Returns:
            True when this caller now holds the lock; False when the entry is
            locked, not ready, not yet due, or another entry for the same
            local record is processing.
        """
        if isinstance(entry, int):
            entry = await self.get(entry)
            if entry is None:
                return False
        entry_id = entry.id
        entity_type, local_id = EntityType(entry.entity_type).value, entry.local_id

        now = utcnow()
        async with self._session_factory() as session, session.begin():
            other = aliased(ChangeQueueEntryModel)
            busy = (
                select(other.id)
                .where(
                    other.entity_type == entity_type,
                    other.local_id == local_id,
                    other.status == SyncStatus.PROCESSING.value,
                    other.id != entry_id,
                )
                .exists()
            )
            stmt = (
                update(ChangeQueueEntryModel)
                .where(ChangeQueueEntryModel.id == entry_id, _ready_clause(now), ~busy)
                .values(
                    status=SyncStatus.PROCESSING.value,
                    locked_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            locked = result.rowcount == 1

        if not locked:
            logger.debug("queue.lock_not_acquired", entry_id=entry_id)
        return locked

    async def unlock(self, entry_id: int) -> None:
        """Release the lock; a still-processing entry goes back to pending."""
        async with self._session_factory() as session, session.begin():
            model = await session.get(ChangeQueueEntryModel, entry_id)
            if model is None:
                return
            model.locked_at = None
            if model.status == SyncStatus.PROCESSING.value:
                model.status = SyncStatus.PENDING.value

    async def mark_processed(
        self, entry_id: int, external_ref_id: str | int | None = None
    ) -> None:
        async with self._session_factory() as session, session.begin():
            model = await self._require(session, entry_id)
            model.status = SyncStatus.PROCESSED.value
            model.locked_at = None
            model.last_error = None
            model.next_retry_at = None
            model.processed_at = utcnow()
            if external_ref_id is not None:
                model.external_ref_id = str(external_ref_id)

    async def mark_skipped(self, entry_id: int, reason: str) -> None:
        async with self._session_factory() as session, session.begin():
            model = await self._require(session, entry_id)
            model.status = SyncStatus.SKIPPED.value
            model.locked_at = None
            model.last_error = _truncate(reason)
            model.processed_at = utcnow()

    async def mark_error(self, entry_id: int, reason: str) -> None:
        async with self._session_factory() as session, session.begin():
            model = await self._require(session, entry_id)
            model.status = SyncStatus.ERROR.value
            model.locked_at = None
            model.last_error = _truncate(reason)

    async def mark_retry(self, entry_id: int, reason: str) -> SyncStatus:
        """Count a failed attempt against the entry's retry budget.

        The attempt increments retry_count. While the new count stays below
        SYNC_MAX_RETRIES the entry is scheduled for retry with exponential
        back-off; otherwise it becomes an error.

        Returns:
            SyncStatus.RETRY or SyncStatus.ERROR, whichever was recorded.
        """
        async with self._session_factory() as session, session.begin():
            model = await self._require(session, entry_id)
            status = self._record_failure(model, reason, utcnow())

        if status == SyncStatus.ERROR:
            logger.warning(
                "queue.max_retries_exceeded",
                entry_id=entry_id,
                retry_count=model.retry_count,
                reason=reason,
            )
        return status

    async def reclaim_stale(
        self,
        timeout: timedelta | None = None,
        max_retries: int | None = None,
    ) -> int:
        """Unlock entries whose worker died mid-processing.

        Entries processing with locked_at older than the timeout are
        released and charged one failed attempt (retry or error by the
        usual budget rule).

        Returns:
            Number of entries reclaimed.
        """
        if timeout is None:
            timeout = timedelta(minutes=self._settings.SYNC_STALE_TIMEOUT_MINUTES)
        now = utcnow()
        threshold = now - timeout

        async with self._session_factory() as session, session.begin():
            stmt = select(ChangeQueueEntryModel).where(
                ChangeQueueEntryModel.status == SyncStatus.PROCESSING.value,
                ChangeQueueEntryModel.locked_at.is_not(None),
                ChangeQueueEntryModel.locked_at < threshold,
            )
            stale = list((await session.execute(stmt)).scalars().all())
            for model in stale:
                status = self._record_failure(
                    model,
                    "Stale lock reclaimed after worker timeout",
                    now,
                    max_retries=max_retries,
                )
                logger.warning(
                    "queue.stale_lock_reclaimed",
                    entry_id=model.id,
                    entity_type=model.entity_type,
                    local_id=model.local_id,
                    status=status.value,
                )

        if stale:
            sync_stale_locks_reclaimed_total.inc(len(stale))
        return len(stale)

    async def requeue(self, entry_id: int) -> bool:
        """Reset a terminal or retrying entry to pending with a fresh budget.

        Returns:
            False when the entry does not exist or is currently locked.
        """
        async with self._session_factory() as session, session.begin():
            model = await session.get(ChangeQueueEntryModel, entry_id)
            if model is None or model.locked_at is not None:
                return False
            model.status = SyncStatus.PENDING.value
            model.retry_count = 0
            model.next_retry_at = None
            model.last_error = None
            model.processed_at = None

        logger.info("queue.requeued", entry_id=entry_id)
        return True

    # ── Reads ───────────────────────────────────────────────────────────────

    async def get(self, entry_id: int) -> ChangeQueueEntryRead | None:
        async with self._session_factory() as session:
            model = await session.get(ChangeQueueEntryModel, entry_id)
            if model is None:
                return None
            return ChangeQueueEntryRead.model_validate(model)

    async def claim_batch(
        self,
        entity_types: Iterable[EntityType] | None = None,
        source: ChangeSource | None = ChangeSource.LOCAL,
        limit: int = 100,
    ) -> list[ChangeQueueEntryRead]:
        """Return ready entries, oldest first.

        The entries are not locked; callers lock each one right before
        processing it.
        """
        stmt = select(ChangeQueueEntryModel).where(_ready_clause(utcnow()))
        if entity_types is not None:
            stmt = stmt.where(
                ChangeQueueEntryModel.entity_type.in_(
                    [EntityType(t).value for t in entity_types]
                )
            )
        if source is not None:
            stmt = stmt.where(ChangeQueueEntryModel.source == ChangeSource(source).value)
        stmt = stmt.order_by(
            ChangeQueueEntryModel.created_at, ChangeQueueEntryModel.id
        ).limit(limit)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [
                ChangeQueueEntryRead.model_validate(model)
                for model in result.scalars().all()
            ]

    async def stats(self) -> QueueStats:
        """Counts per status plus locked and ready-to-process totals."""
        async with self._session_factory() as session:
            rows = await session.execute(
                select(ChangeQueueEntryModel.status, func.count()).group_by(
                    ChangeQueueEntryModel.status
                )
            )
            counts = {status: count for status, count in rows.all()}
            locked = await session.scalar(
                select(func.count()).where(ChangeQueueEntryModel.locked_at.is_not(None))
            )
            ready = await session.scalar(
                select(func.count()).where(_ready_clause(utcnow()))
            )

        return QueueStats(
            pending=counts.get(SyncStatus.PENDING.value, 0),
            retry=counts.get(SyncStatus.RETRY.value, 0),
            processing=counts.get(SyncStatus.PROCESSING.value, 0),
            error=counts.get(SyncStatus.ERROR.value, 0),
            skipped=counts.get(SyncStatus.SKIPPED.value, 0),
            processed=counts.get(SyncStatus.PROCESSED.value, 0),
            locked=locked or 0,
            total_ready=ready or 0,
        )

    # ── Internals ───────────────────────────────────────────────────────────

    def retry_delay(self, retry_count: int) -> timedelta:
        """Back-off before the next attempt: min(2^n * base, max) minutes."""
        minutes = min(
            (2**retry_count) * self._settings.SYNC_RETRY_BACKOFF_BASE_MINUTES,
            self._settings.SYNC_RETRY_BACKOFF_MAX_MINUTES,
        )
        return timedelta(minutes=minutes)

    def _record_failure(
        self,
        model: ChangeQueueEntryModel,
        reason: str,
        now: datetime,
        max_retries: int | None = None,
    ) -> SyncStatus:
        budget = max_retries if max_retries is not None else self._settings.SYNC_MAX_RETRIES
        model.retry_count = (model.retry_count or 0) + 1
        model.locked_at = None
        if model.retry_count >= budget:
            model.status = SyncStatus.ERROR.value
            model.next_retry_at = None
            model.last_error = _truncate(f"Max retries exceeded: {reason}")
            return SyncStatus.ERROR

        model.status = SyncStatus.RETRY.value
        model.next_retry_at = now + self.retry_delay(model.retry_count)
        model.last_error = _truncate(reason)
        return SyncStatus.RETRY

    @staticmethod
    async def _require(session: AsyncSession, entry_id: int) -> ChangeQueueEntryModel:
        model = await session.get(ChangeQueueEntryModel, entry_id)
        if model is None:
            raise LookupError(f"Change queue entry {entry_id} not found")
        return model
