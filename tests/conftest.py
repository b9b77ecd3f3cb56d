"""Shared fixtures for the sync engine tests.

Provides:
- A file-backed SQLite database (aiosqlite) with all tables created
- Settings tuned for tests (no inter-entry delay)
- FakeCrm: in-memory remote CRM implementing the call(method, params) contract
- A fully wired SyncEngine over the fake CRM
- LocalDb: direct access to local tables for arranging and asserting
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from src.app.config import Settings
from src.app.core.database import create_session_factory, init_db
from src.app.sync.clock import utcnow
from src.app.sync.engine import SyncEngine
from src.app.sync.exceptions import RemoteApiError
from src.app.sync.remote.fields import (
    COMPANY_TYPE_ID,
    CONTACT_TYPE_ID,
    CONTRACT_TYPE_ID,
    INVOICE_TYPE_ID,
    MODIFIED_FIELD,
    PRODUCT_TYPE_ID,
)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _parse_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# ── Fake remote CRM ─────────────────────────────────────────────────────────


class FakeCrm:
    """In-memory crm.item.* implementation.

    Every write stamps updatedTime with a strictly increasing clock. Calls
    are recorded in .calls; failures can be queued per method with
    fail_next().
    """

    PAGE_SIZE = 50

    def __init__(self) -> None:
        self.items: dict[int, dict[int, dict[str, Any]]] = {
            COMPANY_TYPE_ID: {},
            CONTACT_TYPE_ID: {},
            CONTRACT_TYPE_ID: {},
            INVOICE_TYPE_ID: {},
            PRODUCT_TYPE_ID: {},
        }
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._failures: dict[str, list[Exception]] = {}
        self._next_id = 100
        self._last_tick: datetime | None = None

    # ── Test helpers ────────────────────────────────────────────────────────

    def tick(self) -> str:
        now = utcnow()
        if self._last_tick is not None and now <= self._last_tick:
            now = self._last_tick + timedelta(milliseconds=1)
        self._last_tick = now
        return now.isoformat()

    def seed(self, entity_type_id: int, **fields: Any) -> dict[str, Any]:
        """Insert an item as if a CRM user created it."""
        item_id = fields.pop("id", None) or self._new_id()
        item = {"id": item_id, **fields}
        item.setdefault(MODIFIED_FIELD, self.tick())
        self.items[entity_type_id][item_id] = item
        return item

    def touch(
        self,
        entity_type_id: int,
        item_id: int,
        *,
        modified_at: datetime | None = None,
        **fields: Any,
    ) -> dict[str, Any]:
        """Simulate a CRM user editing an item.

        modified_at pins the modification time (e.g. past a pending echo
        stamp); the fake clock then continues from it.
        """
        item = self.items[entity_type_id][item_id]
        item.update(fields)
        if modified_at is not None:
            self._last_tick = modified_at
            item[MODIFIED_FIELD] = modified_at.isoformat()
        else:
            item[MODIFIED_FIELD] = self.tick()
        return item

    def fail_next(self, method: str, exc: Exception, times: int = 1) -> None:
        self._failures.setdefault(method, []).extend([exc] * times)

    def calls_to(self, method: str) -> list[dict[str, Any]]:
        return [params for name, params in self.calls if name == method]

    # ── RemoteApi contract ──────────────────────────────────────────────────

    async def call(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        params = params or {}
        self.calls.append((method, params))
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

        store = self.items[params["entityTypeId"]]
        if method == "crm.item.list":
            return self._list(store, params)
        if method == "crm.item.get":
            item = store.get(int(params["id"]))
            if item is None:
                raise RemoteApiError("Not found", retryable=False, status_code=400, error_code="NOT_FOUND")
            return {"result": {"item": dict(item)}}
        if method == "crm.item.add":
            item_id = self._new_id()
            item = {**params["fields"], "id": item_id, MODIFIED_FIELD: self.tick()}
            store[item_id] = item
            return {"result": {"item": dict(item)}}
        if method == "crm.item.update":
            item = store.get(int(params["id"]))
            if item is None:
                raise RemoteApiError("Not found", retryable=False, status_code=400, error_code="NOT_FOUND")
            item.update(params["fields"])
            item[MODIFIED_FIELD] = self.tick()
            return {"result": {"item": dict(item)}}
        raise RemoteApiError(f"Unknown method {method}", retryable=False, error_code="ERROR_METHOD_NOT_FOUND")

    def _list(self, store: dict[int, dict[str, Any]], params: dict[str, Any]) -> dict[str, Any]:
        matches = [item for item in store.values() if self._matches(item, params.get("filter") or {})]
        matches.sort(key=lambda item: (_parse_time(item.get(MODIFIED_FIELD)) or _EPOCH, item["id"]))
        start = int(params.get("start") or 0)
        page = matches[start:start + self.PAGE_SIZE]
        response: dict[str, Any] = {
            "result": {"items": [dict(item) for item in page]},
            "total": len(matches),
        }
        if start + self.PAGE_SIZE < len(matches):
            response["next"] = start + self.PAGE_SIZE
        return response

    @staticmethod
    def _matches(item: dict[str, Any], conditions: dict[str, Any]) -> bool:
        for key, expected in conditions.items():
            if key.startswith(">"):
                actual = _parse_time(item.get(key[1:]))
                if actual is None or actual <= _parse_time(expected):
                    return False
            elif str(item.get(key)) != str(expected):
                return False
        return True

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id


# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    """Test settings: no throttling delay, default retry budget."""
    return Settings(
        DATABASE_URL="sqlite+aiosqlite://",
        REMOTE_WEBHOOK_URL="https://crm.test/rest/1/token",
        SYNC_REQUESTS_PER_SECOND=0,
    )


@pytest_asyncio.fixture
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite so concurrent sessions really use separate connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(db_engine)


@pytest.fixture
def fake_crm() -> FakeCrm:
    return FakeCrm()


@pytest.fixture
def sync_engine(session_factory, fake_crm, settings) -> SyncEngine:
    return SyncEngine(session_factory, fake_crm, settings)




class LocalDb:
    """Direct access to the local tables for arranging and asserting."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def add(self, *entities: Any) -> list[Any]:
        async with self._session_factory() as session, session.begin():
            session.add_all(entities)
            await session.flush()
        return list(entities)

    async def get(self, model: type, local_id: int) -> Any:
        async with self._session_factory() as session:
            return await session.get(model, local_id)

    async def all(self, model: type) -> list[Any]:
        async with self._session_factory() as session:
            result = await session.execute(select(model).order_by(model.id))
            return list(result.scalars().all())


@pytest.fixture
def local_db(session_factory) -> LocalDb:
    return LocalDb(session_factory)
