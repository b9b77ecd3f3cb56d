"""Reconciliation Key Resolver -- pair local and remote records.

Candidates are tried in a fixed priority order (external id, then global
id, then business key); the first key that yields a match wins. The same
resolver serves local lookups (inbound) and remote lookups (outbound):
each candidate carries its own async lookup.

Business-key collisions follow DuplicateKeyPolicy:
- create_new: never link on business key; log the collision so a new
  record is created next to the existing one(s).
- link_unique: link only when exactly one live record matches.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

from src.app.config import DuplicateKeyPolicy

logger = structlog.get_logger(__name__)


class MatchKey(str, Enum):
    """Reconciliation keys, declared in priority order."""

    EXTERNAL_ID = "external_id"
    GLOBAL_ID = "global_id"
    BUSINESS_KEY = "business_key"


_PRIORITY = {key: index for index, key in enumerate(MatchKey)}


@dataclass(frozen=True)
class KeyCandidate:
    """One key to try.

    The lookup returns a single record, None, or (for business keys) a
    list of live records.
    """

    kind: MatchKey
    value: Any
    lookup: Callable[[Any], Awaitable[Any]]


@dataclass(frozen=True)
class ReconciliationMatch:
    """A paired record and the key that paired it."""

    kind: MatchKey
    target: Any


class ReconciliationKeyResolver:
    """Resolve a record's counterpart from an ordered set of keys.

    Args:
        policy: Behaviour on business-key matches.
    """

    def __init__(self, policy: DuplicateKeyPolicy = DuplicateKeyPolicy.create_new) -> None:
        self._policy = DuplicateKeyPolicy(policy)

    @property
    def policy(self) -> DuplicateKeyPolicy:
        return self._policy

    async def resolve(
        self,
        candidates: Iterable[KeyCandidate],
        *,
        entity_type: str | None = None,
    ) -> ReconciliationMatch | None:
        """Return the first match by key priority, or None.

        Candidates with an empty value are ignored. Order of the input does
        not matter; keys are always tried external id first.
        """
        ordered = sorted(
            (c for c in candidates if c.value not in (None, "")),
            key=lambda c: _PRIORITY[c.kind],
        )
        for candidate in ordered:
            found = await candidate.lookup(candidate.value)
            if candidate.kind == MatchKey.BUSINESS_KEY:
                match = self._from_business_key(candidate, found, entity_type)
            else:
                match = self._from_identity_key(candidate, found)
            if match is not None:
                logger.debug(
                    "reconcile.matched",
                    entity_type=entity_type,
                    key=candidate.kind.value,
                    value=candidate.value,
                )
                return match
        return None

    @staticmethod
    def _from_identity_key(candidate: KeyCandidate, found: Any) -> ReconciliationMatch | None:
        if isinstance(found, list):
            found = found[0] if found else None
        if found is None:
            return None
        return ReconciliationMatch(kind=candidate.kind, target=found)

    def _from_business_key(
        self,
        candidate: KeyCandidate,
        found: Any,
        entity_type: str | None,
    ) -> ReconciliationMatch | None:
        if found is None:
            return None
        matches = found if isinstance(found, list) else [found]
        if not matches:
            return None

        if self._policy == DuplicateKeyPolicy.link_unique and len(matches) == 1:
            return ReconciliationMatch(kind=candidate.kind, target=matches[0])

        logger.warning(
            "reconcile.business_key_collision",
            entity_type=entity_type,
            value=candidate.value,
            matches=len(matches),
            policy=self._policy.value,
        )
        return None
