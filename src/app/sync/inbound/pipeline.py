"""Inbound pull pipeline -- runs the pullers in dependency order."""

from __future__ import annotations

from collections.abc import Iterable

import structlog

from src.app.sync.inbound.base import AbstractPuller
from src.app.sync.schemas import EntityType, PullStats

logger = structlog.get_logger(__name__)


class InboundPullPipeline:
    """Registry of pullers with per-entity-type failure isolation.

    Args:
        pullers: Pullers in the order pull_all() should run them (parents first).
    """

    def __init__(self, pullers: Iterable[AbstractPuller]) -> None:
        self._pullers: dict[EntityType, AbstractPuller] = {
            puller.entity_type: puller for puller in pullers
        }

    @property
    def entity_types(self) -> list[EntityType]:
        return list(self._pullers)

    def puller_for(self, entity_type: EntityType) -> AbstractPuller:
        try:
            return self._pullers[EntityType(entity_type)]
        except KeyError as exc:
            raise ValueError(f"No puller registered for {entity_type!r}") from exc

    async def pull(self, entity_type: EntityType, *, dry_run: bool = False) -> PullStats:
        return await self.puller_for(entity_type).pull(dry_run=dry_run)

    async def pull_all(self, *, dry_run: bool = False) -> dict[EntityType, PullStats]:
        """Pull every registered entity type; one type failing never stops the others."""
        results: dict[EntityType, PullStats] = {}
        for entity_type, puller in self._pullers.items():
            try:
                results[entity_type] = await puller.pull(dry_run=dry_run)
            except Exception as exc:
                logger.exception(
                    "inbound.pull_failed",
                    entity_type=entity_type.value,
                    error=str(exc),
                )
                results[entity_type] = PullStats(errors=1)
        return results
