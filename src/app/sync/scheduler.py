"""Background scheduler running the sync cycle on a fixed interval.

Wraps an APScheduler AsyncIOScheduler with one interval job that calls
SyncEngine.run_cycle(). max_instances=1 keeps ticks from overlapping;
cross-process safety comes from the change queue locks.

Exports:
    SyncScheduler: Interval scheduler for the bidirectional sync cycle.
"""

from __future__ import annotations

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
import structlog

from src.app.sync.engine import SyncEngine

logger = structlog.get_logger(__name__)


class SyncScheduler:
    """Lightweight scheduler for the recurring sync cycle.

    Args:
        engine: SyncEngine whose run_cycle() the job invokes.
        interval_seconds: Seconds between ticks.
    """

    JOB_ID = "crm_sync_cycle"

    def __init__(self, engine: SyncEngine, interval_seconds: int = 60) -> None:
        self._engine = engine
        self._interval = interval_seconds
        self._scheduler: AsyncIOScheduler | None = None
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    def start(self) -> bool:
        """Start the scheduler. Returns False if it could not be started."""
        try:
            self._scheduler = AsyncIOScheduler()
            self._scheduler.add_job(
                self._run_cycle,
                trigger=IntervalTrigger(seconds=self._interval),
                id=self.JOB_ID,
                name="Bidirectional CRM sync cycle",
                max_instances=1,
                coalesce=True,
                misfire_grace_time=self._interval,
            )
            self._scheduler.start()
            self._started = True
            logger.info("sync_scheduler.started", interval_seconds=self._interval)
            return True
        except Exception as exc:
            logger.warning("sync_scheduler.start_failed", error=str(exc))
            return False

    def stop(self) -> None:
        """Shut down the scheduler and ask a running cycle to stop."""
        self._engine.context.request_stop()
        if self._scheduler is not None and self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("sync_scheduler.stopped")

    async def _run_cycle(self) -> None:
        """Run one sync cycle; failures are logged so the next tick still runs."""
        logger.info("sync_scheduler.cycle_triggered")
        try:
            result = await self._engine.run_cycle()
        except Exception as exc:
            logger.exception("sync_scheduler.cycle_failed", error=str(exc))
            return
        logger.info(
            "sync_scheduler.cycle_finished",
            reclaimed=result.reclaimed,
            pushed=result.drained.processed,
        )
