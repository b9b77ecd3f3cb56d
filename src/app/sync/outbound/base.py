"""OutboundProcessor -- push one local entity to the remote CRM.

process(entry, session) runs inside the caller's local transaction:

    load entity -> validate -> resolve_dependencies -> map_fields
      -> locate_remote -> create_or_update_remote -> store remote id

Any exception leaves the transaction to be rolled back by the caller; the
supervisor then records the outcome on the queue entry.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from functools import partial
from typing import Any, ClassVar

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.accounting.repository import AccountingRepository
from src.app.config import Settings
from src.app.sync.clock import utcnow
from src.app.sync.dependencies import DependencyResolver
from src.app.sync.exceptions import DependencyNotReadyError, ValidationError
from src.app.sync.reconciliation import KeyCandidate, MatchKey, ReconciliationKeyResolver
from src.app.sync.remote.directory import RemoteDirectory
from src.app.sync.schemas import ChangeQueueEntryRead, EntityType

logger = structlog.get_logger(__name__)


def clean_string(value: str | None) -> str | None:
    """Collapse whitespace; empty strings become None."""
    if value is None:
        return None
    cleaned = " ".join(value.split())
    return cleaned or None


def validate_inn(inn: str | None, owner: str) -> None:
    """Tax ids are 10 (legal entity) or 12 (individual) digits."""
    if not inn:
        raise ValidationError(f"Missing INN for {owner}")
    if not inn.isdigit() or len(inn) not in (10, 12):
        raise ValidationError(f"Invalid INN {inn!r} for {owner}")


class OutboundProcessor(ABC):
    """Base class for per-entity-type push processors.

    Args:
        directory: Remote directory for lookups and writes.
        resolver: Dependency resolver confirming remote parents.
        reconciler: Key resolver locating the remote counterpart.
        settings: Push stamp lead and related configuration.
    """

    entity_type: ClassVar[EntityType]

    def __init__(
        self,
        *,
        directory: RemoteDirectory,
        resolver: DependencyResolver,
        reconciler: ReconciliationKeyResolver,
        settings: Settings,
    ) -> None:
        self._directory = directory
        self._resolver = resolver
        self._reconciler = reconciler
        self._settings = settings

    # ── Steps ───────────────────────────────────────────────────────────────

    def validate(self, entity: Any) -> None:
        """Raise ValidationError when the entity cannot be pushed."""

    async def resolve_dependencies(
        self, entity: Any, repo: AccountingRepository
    ) -> dict[str, Any]:
        return {}

    @abstractmethod
    def map_fields(self, entity: Any, deps: dict[str, Any]) -> dict[str, Any]:
        """Build the remote field set (see push_stamp())."""

    async def locate_remote(
        self, entity: Any, deps: dict[str, Any] | None = None
    ) -> int | None:
        """Stored external id first, then a remote lookup by global id."""
        match = await self._reconciler.resolve(
            [
                KeyCandidate(MatchKey.EXTERNAL_ID, entity.external_ref_id, _as_remote_id),
                KeyCandidate(
                    MatchKey.GLOBAL_ID,
                    entity.global_id,
                    partial(self._directory.find_id_by_global_id, self.entity_type),
                ),
            ],
            entity_type=self.entity_type.value,
        )
        return int(match.target) if match is not None else None

    async def create_or_update_remote(
        self, remote_id: int | None, fields: dict[str, Any]
    ) -> int:
        if remote_id is None:
            return await self._directory.create(self.entity_type, fields)
        return await self._directory.update(self.entity_type, remote_id, fields)

    # ── Driver ──────────────────────────────────────────────────────────────

    async def process(self, entry: ChangeQueueEntryRead, session: AsyncSession) -> int:
        """Push the entity behind a queue entry.

        Returns:
            The remote id written to.
        """
        repo = AccountingRepository(session)
        entity = await repo.find_by_id(self.entity_type, entry.local_id)
        if entity is None:
            raise ValidationError(f"{self.entity_type.value} {entry.local_id} not found")

        self.validate(entity)
        deps = await self.resolve_dependencies(entity, repo)

        # Minted after dependency lookups so no local write is pending
        # while a parent is being pulled
        if not entity.global_id:
            entity.global_id = str(uuid.uuid4())
        fields = self.map_fields(entity, deps)
        remote_id = await self.locate_remote(entity, deps)
        created = remote_id is None
        remote_id = await self.create_or_update_remote(remote_id, fields)

        entity.external_ref_id = str(remote_id)
        await repo.save(entity)

        logger.info(
            "outbound.entity_pushed",
            entity_type=self.entity_type.value,
            local_id=entity.id,
            remote_id=remote_id,
            created=created,
        )
        return remote_id

    # ── Helpers ─────────────────────────────────────────────────────────────

    def push_stamp(self) -> datetime:
        """Value for the "last pushed" field, slightly in the future.

        The remote modification time produced by this push is then not
        newer than the stamp, so the next pull ignores our own echo.
        """
        return utcnow() + timedelta(seconds=self._settings.SYNC_PUSH_STAMP_LEAD_SECONDS)

    async def resolve_parent(
        self,
        parent_type: EntityType,
        parent_global_id: str | None,
        repo: AccountingRepository,
        *,
        required: bool = True,
    ) -> int | None:
        """Remote id of a parent entity.

        A parent already paired locally answers with its stored external id
        and is never re-pulled, so unpushed local edits to it survive. Other
        parents are looked up remotely by global id; one found there but
        missing locally is imported through the dependency resolver.

        Raises:
            ValidationError: Required parent reference is empty.
            DependencyNotReadyError: Parent not present on the remote side yet.
        """
        if not parent_global_id:
            if required:
                raise ValidationError(
                    f"{self.entity_type.value} has no {parent_type.value} reference"
                )
            return None

        parent = await repo.find_by_global_id(parent_type, parent_global_id)
        if parent is not None and parent.external_ref_id:
            return int(parent.external_ref_id)

        remote_id = await self._directory.find_id_by_global_id(parent_type, parent_global_id)
        if remote_id is None:
            raise DependencyNotReadyError(
                f"{parent_type.value} {parent_global_id} not synced to remote yet"
            )
        if parent is None:
            await self._resolver.ensure(parent_type, remote_id)
        return remote_id


async def _as_remote_id(value: str | int) -> int:
    return int(value)
