"""Initial schema: accounting tables, change queue and pull cursors.

Revision ID: 001_initial_sync
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_initial_sync"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _synced_columns() -> list[sa.Column]:
    """Columns shared by every synchronised accounting table."""
    return [
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("global_id", sa.String(36), nullable=True),
        sa.Column("external_ref_id", sa.String(64), nullable=True),
        sa.Column("last_pulled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deletion_mark", sa.Boolean(), server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def _synced_indexes(table: str) -> None:
    op.create_index(f"ix_{table}_global_id", table, ["global_id"], unique=True)
    op.create_index(f"ix_{table}_external_ref_id", table, ["external_ref_id"], unique=True)


def upgrade() -> None:
    # ── Accounting ──────────────────────────────────────────────────────────

    op.create_table(
        "organizations",
        *_synced_columns(),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("inn", sa.String(12), nullable=True),
        sa.Column("kpp", sa.String(9), nullable=True),
    )
    _synced_indexes("organizations")
    op.create_index("ix_organizations_inn", "organizations", ["inn"])

    op.create_table(
        "counterparties",
        *_synced_columns(),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("inn", sa.String(12), nullable=True),
        sa.Column("kpp", sa.String(9), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
    )
    _synced_indexes("counterparties")
    op.create_index("ix_counterparties_inn", "counterparties", ["inn"])

    op.create_table(
        "contact_persons",
        *_synced_columns(),
        sa.Column("counterparty_id", sa.Integer(), sa.ForeignKey("counterparties.id"), nullable=True),
        sa.Column("counterparty_global_id", sa.String(36), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("first_name", sa.String(100), nullable=False),
        sa.Column("middle_name", sa.String(100), nullable=True),
        sa.Column("position", sa.String(200), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
    )
    _synced_indexes("contact_persons")
    op.create_index("ix_contact_persons_counterparty_id", "contact_persons", ["counterparty_id"])

    op.create_table(
        "contracts",
        *_synced_columns(),
        sa.Column("number", sa.String(100), nullable=False),
        sa.Column("signed_on", sa.Date(), nullable=True),
        sa.Column("counterparty_id", sa.Integer(), sa.ForeignKey("counterparties.id"), nullable=True),
        sa.Column("counterparty_global_id", sa.String(36), nullable=True),
        sa.Column("organization_global_id", sa.String(36), nullable=True),
        sa.Column("is_edo", sa.Boolean(), server_default="0"),
        sa.Column("is_annulled", sa.Boolean(), server_default="0"),
    )
    _synced_indexes("contracts")
    op.create_index("ix_contracts_counterparty_id", "contracts", ["counterparty_id"])

    op.create_table(
        "products",
        *_synced_columns(),
        sa.Column("name", sa.String(500), nullable=False),
        sa.Column("code", sa.String(50), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.Float(), nullable=True),
        sa.Column("unit", sa.String(20), nullable=True),
        sa.Column("vat_rate", sa.String(20), nullable=True),
    )
    _synced_indexes("products")
    op.create_index("ix_products_code", "products", ["code"])

    op.create_table(
        "customer_orders",
        *_synced_columns(),
        sa.Column("number", sa.String(50), nullable=False),
        sa.Column("order_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("counterparty_id", sa.Integer(), sa.ForeignKey("counterparties.id"), nullable=True),
        sa.Column("counterparty_global_id", sa.String(36), nullable=True),
        sa.Column("contract_id", sa.Integer(), sa.ForeignKey("contracts.id"), nullable=True),
        sa.Column("contract_global_id", sa.String(36), nullable=True),
        sa.Column("organization_global_id", sa.String(36), nullable=True),
        sa.Column("amount", sa.Float(), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
    )
    _synced_indexes("customer_orders")
    op.create_index("ix_customer_orders_counterparty_id", "customer_orders", ["counterparty_id"])
    op.create_index("ix_customer_orders_contract_id", "customer_orders", ["contract_id"])

    op.create_table(
        "customer_order_lines",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "order_id",
            sa.Integer(),
            sa.ForeignKey("customer_orders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=True),
        sa.Column("product_global_id", sa.String(36), nullable=True),
        sa.Column("product_name", sa.String(500), nullable=False),
        sa.Column("quantity", sa.Float(), nullable=True),
        sa.Column("price", sa.Float(), nullable=True),
        sa.Column("amount", sa.Float(), nullable=True),
    )
    op.create_index("ix_customer_order_lines_order_id", "customer_order_lines", ["order_id"])

    for table, column in (
        ("order_payment_statuses", "payment_status"),
        ("order_shipment_statuses", "shipment_status"),
    ):
        op.create_table(
            table,
            *_synced_columns(),
            sa.Column("order_global_id", sa.String(36), unique=True, nullable=False),
            sa.Column(
                "customer_order_id",
                sa.Integer(),
                sa.ForeignKey("customer_orders.id"),
                nullable=True,
            ),
            sa.Column(column, sa.String(100), nullable=False),
        )
        _synced_indexes(table)
        op.create_index(f"ix_{table}_customer_order_id", table, ["customer_order_id"])

    # ── Sync bookkeeping ────────────────────────────────────────────────────

    op.create_table(
        "change_queue",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("local_id", sa.Integer(), nullable=False),
        sa.Column("external_ref_id", sa.String(64), nullable=True),
        sa.Column("external_guid", sa.String(36), nullable=True),
        sa.Column("source", sa.String(10), nullable=False),
        sa.Column("status", sa.String(20), server_default="pending", nullable=False),
        sa.Column("retry_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_change_queue_ready", "change_queue", ["status", "locked_at", "next_retry_at"]
    )
    op.create_index("ix_change_queue_local", "change_queue", ["entity_type", "local_id"])

    op.create_table(
        "sync_cursors",
        sa.Column("entity_type", sa.String(50), primary_key=True),
        sa.Column("last_remote_modified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_pulled", sa.Integer(), server_default="0"),
        sa.Column("total_created", sa.Integer(), server_default="0"),
        sa.Column("total_updated", sa.Integer(), server_default="0"),
        sa.Column("total_errors", sa.Integer(), server_default="0"),
    )


def downgrade() -> None:
    op.drop_table("sync_cursors")
    op.drop_index("ix_change_queue_local", table_name="change_queue")
    op.drop_index("ix_change_queue_ready", table_name="change_queue")
    op.drop_table("change_queue")
    op.drop_table("order_shipment_statuses")
    op.drop_table("order_payment_statuses")
    op.drop_table("customer_order_lines")
    op.drop_table("customer_orders")
    op.drop_table("products")
    op.drop_table("contracts")
    op.drop_table("contact_persons")
    op.drop_table("counterparties")
    op.drop_table("organizations")
