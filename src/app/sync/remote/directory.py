"""RemoteDirectory -- entity-level operations over the raw CRM API.

Wraps the generic crm.item.* methods with the entity spec registry:
list changed items page by page, fetch one item, find an item by global
id, create, update and write back a global id. Global-id lookups are
memoised on the SyncRunContext so a run asks the CRM at most once per key.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any

import structlog

from src.app.sync.clock import format_remote_datetime
from src.app.sync.context import MISSING, SyncRunContext
from src.app.sync.exceptions import RemoteApiError
from src.app.sync.remote.client import RemoteApi
from src.app.sync.remote.fields import ID_FIELD, spec_for
from src.app.sync.schemas import EntityType

logger = structlog.get_logger(__name__)

NOT_FOUND_CODE = "NOT_FOUND"
_GLOBAL_ID_KEY = "global_id"


class RemoteDirectory:
    """Entity-aware facade over a RemoteApi.

    Args:
        api: Object implementing call(method, params).
        context: Run context holding the lookup cache.
    """

    def __init__(self, api: RemoteApi, context: SyncRunContext) -> None:
        self._api = api
        self._context = context

    async def list_changed(
        self,
        entity_type: EntityType,
        since: datetime | None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield raw items modified after since, oldest first, across pages."""
        spec = spec_for(entity_type)
        extra: dict[str, Any] = {}
        if since is not None:
            extra[f">{spec.modified_field}"] = format_remote_datetime(since)

        start: int | None = 0
        while start is not None:
            response = await self._api.call(
                "crm.item.list",
                {
                    "entityTypeId": spec.entity_type_id,
                    "filter": spec.list_filter(**extra),
                    "order": {spec.modified_field: "ASC", ID_FIELD: "ASC"},
                    "select": ["*", "uf*"],
                    "start": start,
                },
            )
            for item in (response.get("result") or {}).get("items", []):
                yield item
            start = response.get("next")

    async def get(self, entity_type: EntityType, remote_id: int | str) -> dict[str, Any] | None:
        """Fetch one item; None when the CRM reports it missing."""
        spec = spec_for(entity_type)
        try:
            response = await self._api.call(
                "crm.item.get",
                {"entityTypeId": spec.entity_type_id, "id": int(remote_id)},
            )
        except RemoteApiError as exc:
            if exc.error_code == NOT_FOUND_CODE:
                return None
            raise
        return (response.get("result") or {}).get("item")

    async def find_id_by_global_id(
        self, entity_type: EntityType, global_id: str | None
    ) -> int | None:
        """Remote id of the item carrying global_id, or None."""
        if not global_id:
            return None
        cached = self._context.cached_lookup(entity_type, _GLOBAL_ID_KEY, global_id)
        if cached is not MISSING:
            return cached

        spec = spec_for(entity_type)
        response = await self._api.call(
            "crm.item.list",
            {
                "entityTypeId": spec.entity_type_id,
                "filter": spec.list_filter(**{spec.global_id_field: global_id}),
                "select": [ID_FIELD],
                "start": 0,
            },
        )
        items = (response.get("result") or {}).get("items", [])
        remote_id = int(items[0][ID_FIELD]) if items else None
        self._context.remember_lookup(entity_type, _GLOBAL_ID_KEY, global_id, remote_id)
        return remote_id

    async def create(
        self,
        entity_type: EntityType,
        fields: dict[str, Any],
    ) -> int:
        spec = spec_for(entity_type)
        response = await self._api.call(
            "crm.item.add",
            {"entityTypeId": spec.entity_type_id, "fields": {**spec.base_filter, **fields}},
        )
        item = (response.get("result") or {}).get("item") or {}
        if not item.get(ID_FIELD):
            raise RemoteApiError(
                f"crm.item.add returned no id for {entity_type.value}", retryable=True
            )
        remote_id = int(item[ID_FIELD])

        global_id = fields.get(spec.global_id_field)
        if global_id:
            self._context.remember_lookup(entity_type, _GLOBAL_ID_KEY, global_id, remote_id)
        logger.info("remote.item_created", entity_type=entity_type.value, remote_id=remote_id)
        return remote_id

    async def update(
        self,
        entity_type: EntityType,
        remote_id: int | str,
        fields: dict[str, Any],
    ) -> int:
        spec = spec_for(entity_type)
        await self._api.call(
            "crm.item.update",
            {"entityTypeId": spec.entity_type_id, "id": int(remote_id), "fields": fields},
        )
        logger.debug("remote.item_updated", entity_type=entity_type.value, remote_id=remote_id)
        return int(remote_id)

    async def write_global_id(
        self,
        entity_type: EntityType,
        remote_id: int | str,
        global_id: str,
        pushed_at: datetime | None = None,
    ) -> None:
        """Store a locally minted global id on the remote item.

        With pushed_at the "last pushed" stamp is written too, so the
        modification this update causes is not pulled back as a change.
        """
        spec = spec_for(entity_type)
        fields: dict[str, Any] = {spec.global_id_field: global_id}
        if pushed_at is not None:
            fields[spec.last_pushed_field] = format_remote_datetime(pushed_at)
        await self.update(entity_type, remote_id, fields)
        self._context.remember_lookup(entity_type, _GLOBAL_ID_KEY, global_id, int(remote_id))
