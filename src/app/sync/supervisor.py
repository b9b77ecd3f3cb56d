"""Lock & Retry Supervisor -- the single place deciding queue outcomes.

run(entry, step) locks the entry, awaits the step, and translates its
result or exception into exactly one queue transition:

    success                              -> processed
    ValidationError                      -> skipped (no retry charged)
    DependencyNotReadyError              -> retry, error once budget is spent
    RemoteApiError(retryable=True)       -> retry, error once budget is spent
    RemoteApiError(retryable=False)      -> error
    anything else                        -> retry, error once budget is spent

The lock is released in a finally path even when bookkeeping raises.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

import structlog

from src.app.core.monitoring import sync_queue_outcomes_total
from src.app.sync.exceptions import (
    DependencyNotReadyError,
    RemoteApiError,
    ValidationError,
)
from src.app.sync.queue import ChangeQueueStore
from src.app.sync.schemas import ChangeQueueEntryRead, SyncStatus

logger = structlog.get_logger(__name__)

# A step returns the remote id it wrote to (or None)
SyncStep = Callable[[ChangeQueueEntryRead], Awaitable["str | int | None"]]


class LockRetrySupervisor:
    """Run queue entries under lock and classify their failures.

    Args:
        queue: Change queue store used for locking and status bookkeeping.
    """

    def __init__(self, queue: ChangeQueueStore) -> None:
        self._queue = queue

    async def run(
        self, entry: ChangeQueueEntryRead, step: SyncStep
    ) -> SyncStatus | None:
        """Process one entry.

        Returns:
            The recorded status, or None when the entry could not be locked.
        """
        if not await self._queue.lock(entry):
            return None

        log = logger.bind(
            entry_id=entry.id,
            entity_type=entry.entity_type.value,
            local_id=entry.local_id,
        )
        status: SyncStatus | None = None
        try:
            try:
                external_ref_id = await step(entry)
            except ValidationError as exc:
                await self._queue.mark_skipped(entry.id, exc.message)
                status = SyncStatus.SKIPPED
                log.info("supervisor.entry_skipped", reason=exc.message)
            except DependencyNotReadyError as exc:
                status = await self._queue.mark_retry(entry.id, exc.message)
                log.info("supervisor.dependency_not_ready", reason=exc.message, status=status.value)
            except RemoteApiError as exc:
                if exc.retryable:
                    status = await self._queue.mark_retry(entry.id, exc.message)
                else:
                    await self._queue.mark_error(entry.id, exc.message)
                    status = SyncStatus.ERROR
                log.warning(
                    "supervisor.remote_error",
                    reason=exc.message,
                    retryable=exc.retryable,
                    status_code=exc.status_code,
                    status=status.value,
                )
            except Exception as exc:
                reason = f"{type(exc).__name__}: {exc}"
                status = await self._queue.mark_retry(entry.id, reason)
                log.exception("supervisor.unexpected_error", status=status.value)
            else:
                await self._queue.mark_processed(entry.id, external_ref_id)
                status = SyncStatus.PROCESSED
                log.info("supervisor.entry_processed", external_ref_id=external_ref_id)
        finally:
            # Marks already clear the lock; this covers bookkeeping failures
            await self._queue.unlock(entry.id)

        sync_queue_outcomes_total.labels(
            entity_type=entry.entity_type.value, status=status.value
        ).inc()
        return status
