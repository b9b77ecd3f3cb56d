"""Pydantic schemas and enums shared by the sync pipelines.

Defines:
- Enums: EntityType, ChangeSource, SyncStatus, PullAction
- Queue payloads: ChangeQueueEntryRead, QueueStats
- Run results: PullStats, DrainStats, ItemResult, FieldChange, SyncCycleResult
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class EntityType(str, Enum):
    """Synchronised local aggregate types (queue discriminator)."""

    ORGANIZATION = "organization"
    COUNTERPARTY = "counterparty"
    CONTACT = "contact"
    CONTRACT = "contract"
    PRODUCT = "product"
    CUSTOMER_ORDER = "customer_order"
    ORDER_PAYMENT_STATUS = "order_payment_status"
    ORDER_SHIPMENT_STATUS = "order_shipment_status"


class ChangeSource(str, Enum):
    """Which side produced a queued change."""

    LOCAL = "LOCAL"
    REMOTE = "REMOTE"


class SyncStatus(str, Enum):
    """Change queue entry lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    RETRY = "retry"
    ERROR = "error"
    SKIPPED = "skipped"
    PROCESSED = "processed"


class PullAction(str, Enum):
    """Per-item outcome of the inbound pipeline."""

    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    DELETED = "deleted"


# ── Queue Schemas ───────────────────────────────────────────────────────────


class ChangeQueueEntryRead(BaseModel):
    """Detached snapshot of one change queue row."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    entity_type: EntityType
    local_id: int
    external_ref_id: str | None = None
    external_guid: str | None = None
    source: ChangeSource
    status: SyncStatus
    retry_count: int = 0
    next_retry_at: datetime | None = None
    locked_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime | None = None


class QueueStats(BaseModel):
    """Change queue counters for operators."""

    pending: int = 0
    retry: int = 0
    processing: int = 0
    error: int = 0
    skipped: int = 0
    processed: int = 0
    locked: int = 0
    total_ready: int = 0


# ── Run Results ─────────────────────────────────────────────────────────────


class FieldChange(BaseModel):
    """Current and incoming value of one local column."""

    old: Any = None
    new: Any = None


class ItemResult(BaseModel):
    """Outcome of applying (or, in a dry run, previewing) one remote item.

    changes is only filled by previews: column name -> old/new value for
    every column the item would write with a different value.
    """

    action: PullAction
    remote_id: int | None = None
    local_id: int | None = None
    global_id: str | None = None
    reason: str | None = None
    changes: dict[str, FieldChange] = Field(default_factory=dict)


class PullStats(BaseModel):
    """Counters returned by one pull of one entity type."""

    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    deleted: int = 0
    errors: int = 0
    cursor: datetime | None = None
    dry_run: bool = False
    previews: list[ItemResult] = Field(default_factory=list)

    def record(self, action: PullAction) -> None:
        self.total += 1
        setattr(self, action.value, getattr(self, action.value) + 1)


class DrainStats(BaseModel):
    """Counters returned by one drain of the change queue."""

    total: int = 0
    processed: int = 0
    errors: int = 0
    skipped: int = 0
    retried: int = 0
    not_locked: int = 0
    stopped: bool = False

    def record(self, status: SyncStatus | None) -> None:
        if status is None:
            self.not_locked += 1
            return
        self.total += 1
        if status == SyncStatus.PROCESSED:
            self.processed += 1
        elif status == SyncStatus.SKIPPED:
            self.skipped += 1
        elif status == SyncStatus.RETRY:
            self.retried += 1
        else:
            self.errors += 1


class SyncCycleResult(BaseModel):
    """Summary of one scheduler tick: reclaim, pull every type, drain LOCAL."""

    reclaimed: int = 0
    pulled: dict[EntityType, PullStats] = Field(default_factory=dict)
    drained: DrainStats = Field(default_factory=DrainStats)
