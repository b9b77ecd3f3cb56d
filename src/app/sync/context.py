"""Run-scoped state shared by the pipelines of one sync run.

A SyncRunContext lives for one scheduler tick or CLI invocation. It
holds the dependency memo, the remote lookup caches, the dry-run flag and
the cooperative stop signal checked between queue entries.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

MISSING = object()


def _key(value: Any) -> str:
    return value.value if isinstance(value, Enum) else str(value)


class SyncRunContext:
    """Caches and stop signal for one sync run."""

    def __init__(self) -> None:
        self._dependencies: dict[tuple[str, str], str | None] = {}
        self._remote_lookups: dict[tuple[str, str, str], Any] = {}
        self._stop_event = asyncio.Event()
        self._dry_run = False

    # ── Dependency memo ─────────────────────────────────────────────────────

    def cached_dependency(self, entity_type: str, remote_ref: str | int) -> Any:
        """Return the memoised global id (possibly None) or MISSING."""
        return self._dependencies.get((_key(entity_type), _key(remote_ref)), MISSING)

    def remember_dependency(
        self, entity_type: str, remote_ref: str | int, global_id: str | None
    ) -> None:
        self._dependencies[(_key(entity_type), _key(remote_ref))] = global_id

    # ── Remote lookup cache ─────────────────────────────────────────────────

    def cached_lookup(self, entity_type: str, key: str, value: str | int) -> Any:
        return self._remote_lookups.get((_key(entity_type), key, _key(value)), MISSING)

    def remember_lookup(
        self, entity_type: str, key: str, value: str | int, result: Any
    ) -> None:
        self._remote_lookups[(_key(entity_type), key, _key(value))] = result

    def clear(self) -> None:
        """Drop all run-scoped caches (the stop signal is kept)."""
        self._dependencies.clear()
        self._remote_lookups.clear()

    # ── Dry run ─────────────────────────────────────────────────────────────

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    @contextmanager
    def preview(self) -> Iterator[None]:
        """Scope in which pulls report what they would change without writing.

        Caches are dropped on entry and exit, so answers computed without
        forced pulls never serve a real run.
        """
        self.clear()
        self._dry_run = True
        try:
            yield
        finally:
            self._dry_run = False
            self.clear()

    # ── Stop signal ─────────────────────────────────────────────────────────

    def request_stop(self) -> None:
        if not self._stop_event.is_set():
            logger.info("sync.stop_requested")
        self._stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    async def wait_or_stop(self, delay: float) -> bool:
        """Sleep up to delay seconds, returning early on a stop request.

        Returns:
            True when a stop was requested.
        """
        if delay <= 0:
            return self.stop_requested
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True


