"""Tests for DependencyResolver: lazy parent pulls and the run-scoped memo."""

from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace

import pytest

from src.app.accounting.models import ContractModel, CounterpartyModel, CustomerOrderModel
from src.app.sync.clock import utcnow
from src.app.sync.dependencies import needs_sync
from src.app.sync.remote.fields import COMPANY_TYPE_ID, CONTRACT_TYPE_ID, INVOICE_TYPE_ID
from src.app.sync.schemas import ChangeSource, EntityType


# ── Helpers ────────────────────────────────────────────────────────────────


def _seed_company(fake_crm, **overrides) -> dict:
    fields = {"title": "Acme LLC", "ufCrmInn": "7701234567", "isMyCompany": "N"}
    fields.update(overrides)
    return fake_crm.seed(COMPANY_TYPE_ID, **fields)


def _seed_contract(fake_crm, company_id: int, **overrides) -> dict:
    fields = {
        "title": "Supply contract",
        "ufCrmContractNo": "D-17",
        "ufCrmContractDate": "2025-11-05",
        "companyId": company_id,
    }
    fields.update(overrides)
    return fake_crm.seed(CONTRACT_TYPE_ID, **fields)


def _company_gets(fake_crm) -> list[dict]:
    return [
        params
        for params in fake_crm.calls_to("crm.item.get")
        if params["entityTypeId"] == COMPANY_TYPE_ID
    ]


# ── needs_sync ──────────────────────────────────────────────────────────────


class TestNeedsSync:
    """Freshness rule for parents."""

    def test_missing_local_needs_sync(self):
        assert needs_sync(None, utcnow()) is True

    def test_never_pulled_needs_sync(self):
        assert needs_sync(SimpleNamespace(last_pulled_at=None), utcnow()) is True

    def test_remote_newer_needs_sync(self):
        local = SimpleNamespace(last_pulled_at=utcnow() - timedelta(hours=1))
        assert needs_sync(local, utcnow()) is True

    def test_local_fresh_does_not(self):
        local = SimpleNamespace(last_pulled_at=utcnow())
        assert needs_sync(local, utcnow() - timedelta(minutes=5)) is False

    def test_no_remote_time_trusts_local(self):
        assert needs_sync(SimpleNamespace(last_pulled_at=None), None) is False

    def test_own_push_echo_trusts_local(self):
        modified = utcnow()
        local = SimpleNamespace(last_pulled_at=None)
        assert needs_sync(local, modified, modified + timedelta(seconds=2)) is False
        assert needs_sync(local, modified, modified - timedelta(seconds=2)) is True


# ── Forced pulls ────────────────────────────────────────────────────────────


class TestForcedPull:
    """Pulling a child makes sure its parent exists locally and is fresh."""

    @pytest.mark.asyncio
    async def test_missing_parent_is_pulled_first(self, sync_engine, fake_crm, local_db):
        company = _seed_company(fake_crm)
        _seed_contract(fake_crm, company["id"])

        stats = await sync_engine.pull(EntityType.CONTRACT)

        assert stats.created == 1
        [counterparty] = await local_db.all(CounterpartyModel)
        [contract] = await local_db.all(ContractModel)
        assert counterparty.external_ref_id == str(company["id"])
        assert contract.counterparty_id == counterparty.id
        assert contract.counterparty_global_id == counterparty.global_id
        assert contract.number == "D-17"
        assert str(contract.signed_on) == "2025-11-05"

    @pytest.mark.asyncio
    async def test_stale_parent_is_refreshed(self, sync_engine, fake_crm, local_db):
        company = _seed_company(fake_crm, title="Acme Renamed")
        await local_db.add(
            CounterpartyModel(
                name="Acme",
                inn="7701234567",
                external_ref_id=str(company["id"]),
                global_id="g-acme",
                last_pulled_at=utcnow() - timedelta(days=1),
            )
        )
        _seed_contract(fake_crm, company["id"])

        await sync_engine.pull(EntityType.CONTRACT)

        [counterparty] = await local_db.all(CounterpartyModel)
        assert counterparty.name == "Acme Renamed"
        [contract] = await local_db.all(ContractModel)
        assert contract.counterparty_global_id == "g-acme"

    @pytest.mark.asyncio
    async def test_fresh_parent_is_not_pulled(self, sync_engine, fake_crm, local_db):
        company = _seed_company(fake_crm, title="Remote Title")
        await local_db.add(
            CounterpartyModel(
                name="Local Title",
                inn="7701234567",
                external_ref_id=str(company["id"]),
                global_id="g-acme",
                last_pulled_at=utcnow() + timedelta(hours=1),
            )
        )
        _seed_contract(fake_crm, company["id"])

        stats = await sync_engine.pull(EntityType.CONTRACT)

        assert stats.created == 1
        [counterparty] = await local_db.all(CounterpartyModel)
        assert counterparty.name == "Local Title"

    @pytest.mark.asyncio
    async def test_pushed_parent_keeps_local_edits(
        self, sync_engine, fake_crm, local_db, session_factory
    ):
        [local] = await local_db.add(CounterpartyModel(name="Acme LLC", inn="7701234567"))
        await sync_engine.queue.enqueue(EntityType.COUNTERPARTY, local.id, ChangeSource.LOCAL)
        await sync_engine.drain_queue()
        async with session_factory() as session, session.begin():
            row = await session.get(CounterpartyModel, local.id)
            row.name = "Acme Renamed LLC"
            remote_id = int(row.external_ref_id)
        _seed_contract(fake_crm, remote_id)

        stats = await sync_engine.pull(EntityType.CONTRACT)

        assert stats.created == 1
        [counterparty] = await local_db.all(CounterpartyModel)
        assert counterparty.name == "Acme Renamed LLC"
        [contract] = await local_db.all(ContractModel)
        assert contract.counterparty_id == local.id

    @pytest.mark.asyncio
    async def test_unresolvable_parent_fails_item(self, sync_engine, fake_crm, local_db):
        _seed_contract(fake_crm, company_id=9999)

        stats = await sync_engine.pull(EntityType.CONTRACT)

        assert stats.errors == 1
        assert await local_db.all(ContractModel) == []

    @pytest.mark.asyncio
    async def test_order_links_contract_and_counterparty(self, sync_engine, fake_crm, local_db):
        company = _seed_company(fake_crm)
        contract = _seed_contract(fake_crm, company["id"])
        fake_crm.seed(
            INVOICE_TYPE_ID,
            title="Order 5",
            ufCrmOrderNumber="ORD-5",
            begindate="2025-12-01T10:00:00+00:00",
            companyId=company["id"],
            parentId1064=contract["id"],
            opportunity=1500.0,
        )

        stats = await sync_engine.pull(EntityType.CUSTOMER_ORDER)

        assert stats.created == 1
        [order] = await local_db.all(CustomerOrderModel)
        [local_contract] = await local_db.all(ContractModel)
        assert order.contract_id == local_contract.id
        assert order.counterparty_global_id == local_contract.counterparty_global_id
        assert order.amount == 1500.0

    @pytest.mark.asyncio
    async def test_order_without_resolvable_contract_still_imports(
        self, sync_engine, fake_crm, local_db
    ):
        company = _seed_company(fake_crm)
        fake_crm.seed(
            INVOICE_TYPE_ID,
            ufCrmOrderNumber="ORD-6",
            begindate="2025-12-02T10:00:00+00:00",
            companyId=company["id"],
            parentId1064=8888,
        )

        stats = await sync_engine.pull(EntityType.CUSTOMER_ORDER)

        assert stats.created == 1
        [order] = await local_db.all(CustomerOrderModel)
        assert order.contract_id is None
        assert order.contract_global_id is None


# ── Run-scoped memo ─────────────────────────────────────────────────────────


class TestMemo:
    """Each parent is resolved at most once per run."""

    @pytest.mark.asyncio
    async def test_second_ensure_hits_cache(self, sync_engine, fake_crm):
        company = _seed_company(fake_crm)

        first = await sync_engine.resolver.ensure(EntityType.COUNTERPARTY, company["id"])
        second = await sync_engine.resolver.ensure(EntityType.COUNTERPARTY, str(company["id"]))

        assert first is not None
        assert second == first
        assert len(_company_gets(fake_crm)) == 1

    @pytest.mark.asyncio
    async def test_missing_parent_cached_as_none(self, sync_engine, fake_crm):
        assert await sync_engine.resolver.ensure(EntityType.COUNTERPARTY, 4242) is None
        assert await sync_engine.resolver.ensure(EntityType.COUNTERPARTY, 4242) is None

        assert len(_company_gets(fake_crm)) == 1

    @pytest.mark.asyncio
    async def test_cleared_context_resolves_again(self, sync_engine, fake_crm):
        company = _seed_company(fake_crm)
        await sync_engine.resolver.ensure(EntityType.COUNTERPARTY, company["id"])

        sync_engine.context.clear()
        await sync_engine.resolver.ensure(EntityType.COUNTERPARTY, company["id"])

        assert len(_company_gets(fake_crm)) == 2

    @pytest.mark.asyncio
    async def test_empty_reference_returns_none(self, sync_engine, fake_crm):
        assert await sync_engine.resolver.ensure(EntityType.COUNTERPARTY, None) is None
        assert fake_crm.calls == []
