"""Tests for the inbound pull pipeline against the in-memory CRM.

Covers idempotent upserts, the echo/freshness filter, per-item failure
isolation with both cursor policies, global id minting and write-back,
reconciliation by external id and business key, remote deletions,
REMOTE change queue entries, invoice product rows, contact persons and
dry-run previews.
"""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from src.app.accounting.models import (
    ContactPersonModel,
    ContractModel,
    CounterpartyModel,
    CustomerOrderLineModel,
    CustomerOrderModel,
    ProductModel,
)
from src.app.config import CursorPolicy, DuplicateKeyPolicy
from src.app.sync.clock import utcnow
from src.app.sync.engine import SyncEngine
from src.app.sync.exceptions import RemoteApiError
from src.app.sync.remote.fields import (
    COMPANY_TYPE_ID,
    CONTACT_TYPE_ID,
    CONTRACT_TYPE_ID,
    GLOBAL_ID_FIELD,
    INVOICE_TYPE_ID,
    LAST_PUSHED_FIELD,
    MODIFIED_FIELD,
    PRODUCT_TYPE_ID,
)
from src.app.sync.schemas import ChangeSource, EntityType, PullAction


# ── Helpers ────────────────────────────────────────────────────────────────


def _seed_company(fake_crm, **overrides) -> dict:
    fields = {"title": "Acme LLC", "ufCrmInn": "7701234567", "isMyCompany": "N"}
    fields.update(overrides)
    return fake_crm.seed(COMPANY_TYPE_ID, **fields)


def _seed_product(fake_crm, **overrides) -> dict:
    fields = {"title": "Widget", "ufCrmCode": "W-1", "ufCrmPrice": 10.5, "ufCrmActive": "Y"}
    fields.update(overrides)
    return fake_crm.seed(PRODUCT_TYPE_ID, **fields)


def _seed_invoice(fake_crm, company_id: int, **overrides) -> dict:
    fields = {
        "title": "Order ORD-7",
        "ufCrmOrderNumber": "ORD-7",
        "begindate": "2025-12-03T10:00:00+00:00",
        "companyId": company_id,
        "opportunity": 25.0,
    }
    fields.update(overrides)
    return fake_crm.seed(INVOICE_TYPE_ID, **fields)


def _engine_with(session_factory, fake_crm, settings, **overrides) -> SyncEngine:
    return SyncEngine(session_factory, fake_crm, settings.model_copy(update=overrides))


# ── Upsert ──────────────────────────────────────────────────────────────────


class TestUpsert:
    """New remote items create local rows; repeated pulls change nothing."""

    @pytest.mark.asyncio
    async def test_new_company_creates_counterparty(self, sync_engine, fake_crm, local_db):
        remote = _seed_company(fake_crm, phone="+7 495 000-00-00")

        stats = await sync_engine.pull(EntityType.COUNTERPARTY)

        assert stats.created == 1
        assert stats.errors == 0
        [row] = await local_db.all(CounterpartyModel)
        assert row.name == "Acme LLC"
        assert row.inn == "7701234567"
        assert row.phone == "+7 495 000-00-00"
        assert row.external_ref_id == str(remote["id"])
        assert row.global_id
        assert row.last_pulled_at is not None
        assert row.deletion_mark is False

    @pytest.mark.asyncio
    async def test_repeated_pull_is_idempotent(self, sync_engine, fake_crm, local_db):
        _seed_company(fake_crm)

        first = await sync_engine.pull(EntityType.COUNTERPARTY)
        second = await sync_engine.pull(EntityType.COUNTERPARTY)
        third = await sync_engine.pull(EntityType.COUNTERPARTY)

        assert first.created == 1
        # The global id write-back is seen once and recognised as our echo
        assert second.created == second.updated == 0
        assert second.skipped == 1
        assert third.total == 0
        assert len(await local_db.all(CounterpartyModel)) == 1

    @pytest.mark.asyncio
    async def test_listing_longer_than_a_page_is_fully_imported(
        self, sync_engine, fake_crm, local_db
    ):
        count = fake_crm.PAGE_SIZE + 10
        for n in range(count):
            _seed_company(fake_crm, title=f"Company {n}", ufCrmInn=f"77{n:08d}")

        first = await sync_engine.pull(EntityType.COUNTERPARTY)
        second = await sync_engine.pull(EntityType.COUNTERPARTY)

        assert first.total == first.created == count
        assert len(await local_db.all(CounterpartyModel)) == count
        # Every minted global id reached the remote side
        assert all(GLOBAL_ID_FIELD in item for item in fake_crm.items[COMPANY_TYPE_ID].values())
        assert second.skipped == count
        assert second.created == second.updated == 0

    @pytest.mark.asyncio
    async def test_own_companies_are_not_counterparties(self, sync_engine, fake_crm, local_db):
        _seed_company(fake_crm, isMyCompany="Y")

        stats = await sync_engine.pull(EntityType.COUNTERPARTY)

        assert stats.total == 0
        assert await local_db.all(CounterpartyModel) == []

    @pytest.mark.asyncio
    async def test_later_remote_edit_updates_row(self, sync_engine, fake_crm, local_db):
        remote = _seed_company(fake_crm)
        await sync_engine.pull(EntityType.COUNTERPARTY)

        fake_crm.touch(
            COMPANY_TYPE_ID,
            remote["id"],
            modified_at=utcnow() + timedelta(minutes=1),
            title="Acme Holding",
        )
        stats = await sync_engine.pull(EntityType.COUNTERPARTY)

        assert stats.updated == 1
        [row] = await local_db.all(CounterpartyModel)
        assert row.name == "Acme Holding"


# ── Global ids ──────────────────────────────────────────────────────────────


class TestGlobalIds:
    """Remote global ids are kept; missing ones are minted and written back."""

    @pytest.mark.asyncio
    async def test_minted_global_id_written_back(self, sync_engine, fake_crm, local_db):
        remote = _seed_company(fake_crm)

        await sync_engine.pull(EntityType.COUNTERPARTY)

        [row] = await local_db.all(CounterpartyModel)
        stored = fake_crm.items[COMPANY_TYPE_ID][remote["id"]]
        assert stored[GLOBAL_ID_FIELD] == row.global_id
        # The write-back carries an echo stamp covering its own modification
        assert datetime.fromisoformat(stored[LAST_PUSHED_FIELD]) >= datetime.fromisoformat(
            stored[MODIFIED_FIELD]
        )

    @pytest.mark.asyncio
    async def test_remote_global_id_is_adopted(self, sync_engine, fake_crm, local_db):
        _seed_company(fake_crm, **{GLOBAL_ID_FIELD: "5f0c3c1e-0000-4000-8000-000000000001"})

        await sync_engine.pull(EntityType.COUNTERPARTY)

        [row] = await local_db.all(CounterpartyModel)
        assert row.global_id == "5f0c3c1e-0000-4000-8000-000000000001"
        assert fake_crm.calls_to("crm.item.update") == []

    @pytest.mark.asyncio
    async def test_write_back_failure_is_tolerated(self, sync_engine, fake_crm, local_db):
        _seed_company(fake_crm)
        fake_crm.fail_next(
            "crm.item.update", RemoteApiError("server error 503", retryable=True, status_code=503)
        )

        stats = await sync_engine.pull(EntityType.COUNTERPARTY)

        assert stats.created == 1
        assert stats.errors == 0
        assert len(await local_db.all(CounterpartyModel)) == 1


# ── Freshness filter ────────────────────────────────────────────────────────


class TestFreshnessFilter:
    """Our own pushes and undated items are skipped."""

    @pytest.mark.asyncio
    async def test_echo_of_own_push_is_skipped(self, sync_engine, fake_crm, local_db):
        stamp = (utcnow() + timedelta(seconds=30)).isoformat()
        _seed_company(fake_crm, **{LAST_PUSHED_FIELD: stamp})

        stats = await sync_engine.pull(EntityType.COUNTERPARTY)

        assert stats.skipped == 1
        assert await local_db.all(CounterpartyModel) == []

    @pytest.mark.asyncio
    async def test_stale_push_stamp_is_imported(self, sync_engine, fake_crm, local_db):
        stamp = (utcnow() - timedelta(hours=1)).isoformat()
        _seed_company(fake_crm, **{LAST_PUSHED_FIELD: stamp})

        stats = await sync_engine.pull(EntityType.COUNTERPARTY)

        assert stats.created == 1

    @pytest.mark.asyncio
    async def test_item_without_modification_time_is_skipped(self, sync_engine, fake_crm):
        _seed_company(fake_crm, **{MODIFIED_FIELD: ""})

        stats = await sync_engine.pull(EntityType.COUNTERPARTY)

        assert stats.skipped == 1
        assert stats.cursor is None


# ── Failure isolation & cursor ──────────────────────────────────────────────


class TestFailureIsolation:
    """One broken item never blocks the rest of the batch."""

    @pytest.mark.asyncio
    async def test_middle_item_failure_batch_max(self, sync_engine, fake_crm, local_db):
        first = _seed_product(fake_crm, ufCrmCode="A")
        _seed_product(fake_crm, title="", ufCrmCode="B")
        third = _seed_product(fake_crm, ufCrmCode="C")
        # Captured now: the global id write-back moves the stored times
        first_modified = datetime.fromisoformat(first[MODIFIED_FIELD])
        third_modified = datetime.fromisoformat(third[MODIFIED_FIELD])

        stats = await sync_engine.pull(EntityType.PRODUCT)

        assert stats.total == 3
        assert stats.created == 2
        assert stats.errors == 1
        assert sorted(p.code for p in await local_db.all(ProductModel)) == ["A", "C"]
        assert stats.cursor == third_modified
        assert stats.cursor > first_modified

    @pytest.mark.asyncio
    async def test_middle_item_failure_contiguous(self, session_factory, fake_crm, settings, local_db):
        engine = _engine_with(
            session_factory, fake_crm, settings, SYNC_CURSOR_POLICY=CursorPolicy.contiguous
        )
        first = _seed_product(fake_crm, ufCrmCode="A")
        first_modified = datetime.fromisoformat(first[MODIFIED_FIELD])
        _seed_product(fake_crm, title="", ufCrmCode="B")
        _seed_product(fake_crm, ufCrmCode="C")

        stats = await engine.pull(EntityType.PRODUCT)

        assert stats.created == 2
        assert stats.errors == 1
        assert stats.cursor == first_modified

    @pytest.mark.asyncio
    async def test_cursor_never_moves_backwards(self, sync_engine, fake_crm):
        _seed_product(fake_crm)
        first = await sync_engine.pull(EntityType.PRODUCT)

        second = await sync_engine.pull(EntityType.PRODUCT)

        assert second.cursor >= first.cursor

    @pytest.mark.asyncio
    async def test_pull_all_isolates_entity_types(self, sync_engine, fake_crm):
        _seed_company(fake_crm)
        fake_crm.fail_next(
            "crm.item.list", RemoteApiError("rejected", retryable=False, status_code=400)
        )

        results = await sync_engine.pull_all()

        # The first type's listing failed; the others still ran
        assert results[EntityType.COUNTERPARTY].errors == 1
        assert results[EntityType.PRODUCT].errors == 0
        assert set(results) == {
            EntityType.COUNTERPARTY,
            EntityType.CONTACT,
            EntityType.CONTRACT,
            EntityType.PRODUCT,
            EntityType.CUSTOMER_ORDER,
        }


# ── Reconciliation ──────────────────────────────────────────────────────────


class TestReconciliation:
    """Remote items pair with existing local rows by key priority."""

    @pytest.mark.asyncio
    async def test_pairs_by_external_id(self, sync_engine, fake_crm, local_db):
        remote = _seed_company(fake_crm, title="Renamed Remotely")
        [local] = await local_db.add(
            CounterpartyModel(
                name="Old Name", inn="7700000000", external_ref_id=str(remote["id"]), global_id="g-1"
            )
        )

        stats = await sync_engine.pull(EntityType.COUNTERPARTY)

        assert stats.updated == 1
        [row] = await local_db.all(CounterpartyModel)
        assert row.id == local.id
        assert row.name == "Renamed Remotely"
        assert row.global_id == "g-1"

    @pytest.mark.asyncio
    async def test_business_key_creates_new_by_default(self, sync_engine, fake_crm, local_db):
        await local_db.add(CounterpartyModel(name="Acme", inn="7701234567", global_id="g-local"))
        _seed_company(fake_crm)

        stats = await sync_engine.pull(EntityType.COUNTERPARTY)

        assert stats.created == 1
        assert len(await local_db.all(CounterpartyModel)) == 2

    @pytest.mark.asyncio
    async def test_business_key_links_unique_match(self, session_factory, fake_crm, settings, local_db):
        engine = _engine_with(
            session_factory,
            fake_crm,
            settings,
            SYNC_DUPLICATE_KEY_POLICY=DuplicateKeyPolicy.link_unique,
        )
        [local] = await local_db.add(
            CounterpartyModel(name="Acme", inn="7701234567", global_id="g-local")
        )
        remote = _seed_company(fake_crm)

        stats = await engine.pull(EntityType.COUNTERPARTY)

        assert stats.updated == 1
        [row] = await local_db.all(CounterpartyModel)
        assert row.id == local.id
        assert row.external_ref_id == str(remote["id"])


# ── Deletions & queue ───────────────────────────────────────────────────────


class TestDeletionsAndQueue:
    """Remote deletions soft-delete; every applied item queues a REMOTE entry."""

    @pytest.mark.asyncio
    async def test_inactive_product_marks_local_deleted(self, sync_engine, fake_crm, local_db):
        remote = _seed_product(fake_crm)
        await sync_engine.pull(EntityType.PRODUCT)

        fake_crm.touch(
            PRODUCT_TYPE_ID,
            remote["id"],
            modified_at=utcnow() + timedelta(minutes=1),
            ufCrmActive="N",
        )
        stats = await sync_engine.pull(EntityType.PRODUCT)

        assert stats.deleted == 1
        [row] = await local_db.all(ProductModel)
        assert row.deletion_mark is True

    @pytest.mark.asyncio
    async def test_inactive_unknown_product_is_skipped(self, sync_engine, fake_crm, local_db):
        _seed_product(fake_crm, ufCrmActive="N")

        stats = await sync_engine.pull(EntityType.PRODUCT)

        assert stats.skipped == 1
        assert await local_db.all(ProductModel) == []

    @pytest.mark.asyncio
    async def test_applied_item_enqueues_remote_entry(self, sync_engine, fake_crm, local_db):
        remote = _seed_company(fake_crm)

        await sync_engine.pull(EntityType.COUNTERPARTY)

        [row] = await local_db.all(CounterpartyModel)
        entries = await sync_engine.queue.claim_batch(source=ChangeSource.REMOTE)
        assert len(entries) == 1
        assert entries[0].entity_type == EntityType.COUNTERPARTY
        assert entries[0].local_id == row.id
        assert entries[0].external_ref_id == str(remote["id"])
        assert entries[0].external_guid == row.global_id
        # Nothing for the outbound pipeline to push back
        assert await sync_engine.queue.claim_batch(source=ChangeSource.LOCAL) == []

    @pytest.mark.asyncio
    async def test_failed_item_enqueues_nothing(self, sync_engine, fake_crm):
        _seed_product(fake_crm, title="")

        await sync_engine.pull(EntityType.PRODUCT)

        assert await sync_engine.queue.claim_batch(source=None) == []


# ── Order lines ─────────────────────────────────────────────────────────────


class TestOrderLines:
    """Invoice product rows replace the order's lines."""

    @pytest.mark.asyncio
    async def test_rows_become_lines(self, sync_engine, fake_crm, local_db):
        [product] = await local_db.add(
            ProductModel(name="Widget", code="W-1", external_ref_id="555", global_id="g-widget")
        )
        company = _seed_company(fake_crm)
        _seed_invoice(
            fake_crm,
            company["id"],
            productRows=[
                {"productName": "Widget", "productId": 555, "price": 10.0, "quantity": 2},
                {"productName": "Delivery", "price": 5.0, "quantity": 1},
            ],
        )

        stats = await sync_engine.pull(EntityType.CUSTOMER_ORDER)

        assert stats.created == 1
        [order] = await local_db.all(CustomerOrderModel)
        widget, delivery = await local_db.all(CustomerOrderLineModel)
        assert (widget.product_name, widget.quantity, widget.price, widget.amount) == (
            "Widget", 2.0, 10.0, 20.0
        )
        assert widget.product_id == product.id
        assert widget.product_global_id == "g-widget"
        assert delivery.product_id is None
        assert delivery.amount == 5.0
        assert {widget.order_id, delivery.order_id} == {order.id}

    @pytest.mark.asyncio
    async def test_changed_rows_replace_lines(self, sync_engine, fake_crm, local_db):
        company = _seed_company(fake_crm)
        invoice = _seed_invoice(
            fake_crm,
            company["id"],
            productRows=[
                {"productName": "Widget", "price": 10.0, "quantity": 2},
                {"productName": "Gadget", "price": 3.0, "quantity": 1},
            ],
        )
        await sync_engine.pull(EntityType.CUSTOMER_ORDER)

        fake_crm.touch(
            INVOICE_TYPE_ID,
            invoice["id"],
            modified_at=utcnow() + timedelta(minutes=1),
            productRows=[{"productName": "Widget", "price": 10.0, "quantity": 5}],
        )
        stats = await sync_engine.pull(EntityType.CUSTOMER_ORDER)

        assert stats.updated == 1
        [line] = await local_db.all(CustomerOrderLineModel)
        assert line.product_name == "Widget"
        assert line.amount == 50.0

    @pytest.mark.asyncio
    async def test_invoice_without_rows_keeps_lines(self, sync_engine, fake_crm, local_db):
        company = _seed_company(fake_crm)
        invoice = _seed_invoice(
            fake_crm,
            company["id"],
            productRows=[{"productName": "Widget", "price": 10.0, "quantity": 2}],
        )
        await sync_engine.pull(EntityType.CUSTOMER_ORDER)

        fake_crm.touch(
            INVOICE_TYPE_ID,
            invoice["id"],
            modified_at=utcnow() + timedelta(minutes=1),
            productRows=[],
            opportunity=30.0,
        )
        stats = await sync_engine.pull(EntityType.CUSTOMER_ORDER)

        assert stats.updated == 1
        [order] = await local_db.all(CustomerOrderModel)
        assert order.amount == 30.0
        assert [line.product_name for line in await local_db.all(CustomerOrderLineModel)] == [
            "Widget"
        ]


# ── Contacts ────────────────────────────────────────────────────────────────


class TestContacts:
    """Remote contacts become contact persons of their company's counterparty."""

    @pytest.mark.asyncio
    async def test_contact_linked_to_counterparty(self, sync_engine, fake_crm, local_db):
        company = _seed_company(fake_crm)
        fake_crm.seed(
            CONTACT_TYPE_ID,
            name="Ivan",
            lastName="Petrov",
            secondName="Sergeevich",
            post="CFO",
            email="ivan@acme.test",
            companyId=company["id"],
        )

        stats = await sync_engine.pull(EntityType.CONTACT)

        assert stats.created == 1
        [counterparty] = await local_db.all(CounterpartyModel)
        [contact] = await local_db.all(ContactPersonModel)
        assert contact.full_name == "Petrov Ivan Sergeevich"
        assert contact.position == "CFO"
        assert contact.email == "ivan@acme.test"
        assert contact.counterparty_id == counterparty.id
        assert contact.counterparty_global_id == counterparty.global_id

    @pytest.mark.asyncio
    async def test_contact_without_company_fails(self, sync_engine, fake_crm, local_db):
        fake_crm.seed(CONTACT_TYPE_ID, name="Ivan", lastName="Petrov")

        stats = await sync_engine.pull(EntityType.CONTACT)

        assert stats.errors == 1
        assert await local_db.all(ContactPersonModel) == []


# ── Dry run ─────────────────────────────────────────────────────────────────


class TestDryRun:
    """Previews report per-item actions and column changes without writing."""

    @pytest.mark.asyncio
    async def test_preview_writes_nothing(self, sync_engine, fake_crm, local_db):
        remote = _seed_company(fake_crm)

        stats = await sync_engine.pull(EntityType.COUNTERPARTY, dry_run=True)

        assert stats.dry_run is True
        assert stats.created == 1
        [preview] = stats.previews
        assert preview.action == PullAction.CREATED
        assert preview.remote_id == remote["id"]
        assert preview.changes["name"].old is None
        assert preview.changes["name"].new == "Acme LLC"
        assert stats.cursor is None
        assert await local_db.all(CounterpartyModel) == []
        assert fake_crm.calls_to("crm.item.update") == []
        assert await sync_engine.queue.claim_batch(source=None) == []

        # The cursor stayed put, so a real pull still sees the item
        real = await sync_engine.pull(EntityType.COUNTERPARTY)
        assert real.created == 1

    @pytest.mark.asyncio
    async def test_preview_lists_changed_columns_only(self, sync_engine, fake_crm, local_db):
        remote = _seed_company(fake_crm, title="Acme Holding")
        await local_db.add(
            CounterpartyModel(
                name="Acme LLC",
                inn="7701234567",
                external_ref_id=str(remote["id"]),
                global_id="g-1",
            )
        )

        stats = await sync_engine.pull(EntityType.COUNTERPARTY, dry_run=True)

        [preview] = stats.previews
        assert preview.action == PullAction.UPDATED
        assert preview.global_id == "g-1"
        assert set(preview.changes) == {"name"}
        assert (preview.changes["name"].old, preview.changes["name"].new) == (
            "Acme LLC",
            "Acme Holding",
        )
        [row] = await local_db.all(CounterpartyModel)
        assert row.name == "Acme LLC"

    @pytest.mark.asyncio
    async def test_preview_of_remote_deletion(self, sync_engine, fake_crm, local_db):
        remote = _seed_product(fake_crm, ufCrmActive="N")
        [local] = await local_db.add(
            ProductModel(name="Widget", code="W-1", external_ref_id=str(remote["id"]))
        )

        stats = await sync_engine.pull(EntityType.PRODUCT, dry_run=True)

        [preview] = stats.previews
        assert preview.action == PullAction.DELETED
        assert preview.local_id == local.id
        assert preview.changes["deletion_mark"].new is True
        [row] = await local_db.all(ProductModel)
        assert row.deletion_mark is False

    @pytest.mark.asyncio
    async def test_preview_does_not_pull_parents(self, sync_engine, fake_crm, local_db):
        company = _seed_company(fake_crm, **{GLOBAL_ID_FIELD: "g-remote-co"})
        fake_crm.seed(
            CONTRACT_TYPE_ID, ufCrmContractNo="D-30", companyId=company["id"]
        )

        stats = await sync_engine.pull(EntityType.CONTRACT, dry_run=True)

        [preview] = stats.previews
        assert preview.action == PullAction.CREATED
        assert preview.changes["counterparty_global_id"].new == "g-remote-co"
        assert await local_db.all(CounterpartyModel) == []
        assert sync_engine.context.dry_run is False

        real = await sync_engine.pull(EntityType.CONTRACT)
        assert real.created == 1
        [counterparty] = await local_db.all(CounterpartyModel)
        [contract] = await local_db.all(ContractModel)
        assert contract.counterparty_id == counterparty.id
