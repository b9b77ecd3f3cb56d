"""Accounting persistence models -- the locally mastered side of the sync.

SQLAlchemy models sharing SyncedEntityMixin:
- OrganizationModel: Own legal entities (business key: inn)
- CounterpartyModel: Customers and suppliers (business key: inn)
- ContactPersonModel: People working at a counterparty
- ContractModel: Contracts between an organization and a counterparty
- ProductModel: Catalog items (business key: code)
- CustomerOrderModel / CustomerOrderLineModel: Orders with their lines
- OrderPaymentStatusModel / OrderShipmentStatusModel: Per-order status registers

Cross-entity links are stored both as local foreign keys and as the
parent's global id, so a row can be pushed before its parent has been
resolved locally.
"""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import Base


class SyncedEntityMixin:
    """Columns every synchronised entity carries.

    global_id is the cross-system identity; external_ref_id is the remote
    CRM's numeric id once the row has been paired.
    """

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    global_id: Mapped[str | None] = mapped_column(
        String(36), unique=True, index=True, nullable=True
    )
    external_ref_id: Mapped[str | None] = mapped_column(
        String(64), unique=True, index=True, nullable=True
    )
    last_pulled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    deletion_mark: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="0", nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class OrganizationModel(SyncedEntityMixin, Base):
    """Own legal entity, mirrored to the remote CRM as a "my company" record."""

    __tablename__ = "organizations"

    name: Mapped[str] = mapped_column(String(300), nullable=False)
    inn: Mapped[str | None] = mapped_column(String(12), index=True, nullable=True)
    kpp: Mapped[str | None] = mapped_column(String(9), nullable=True)


class CounterpartyModel(SyncedEntityMixin, Base):
    """Customer or supplier company."""

    __tablename__ = "counterparties"

    name: Mapped[str] = mapped_column(String(300), nullable=False)
    inn: Mapped[str | None] = mapped_column(String(12), index=True, nullable=True)
    kpp: Mapped[str | None] = mapped_column(String(9), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)


class ContactPersonModel(SyncedEntityMixin, Base):
    """Contact person at a counterparty, mirrored as a remote contact."""

    __tablename__ = "contact_persons"

    counterparty_id: Mapped[int | None] = mapped_column(
        ForeignKey("counterparties.id"), index=True, nullable=True
    )
    counterparty_global_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    middle_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    position: Mapped[str | None] = mapped_column(String(200), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def full_name(self) -> str:
        return " ".join(
            part for part in (self.last_name, self.first_name, self.middle_name) if part
        )


class ContractModel(SyncedEntityMixin, Base):
    """Contract with a counterparty.

    counterparty_global_id is mandatory for a push; counterparty_id is
    filled once the counterparty exists locally.
    """

    __tablename__ = "contracts"

    number: Mapped[str] = mapped_column(String(100), nullable=False)
    signed_on: Mapped[date | None] = mapped_column(Date, nullable=True)
    counterparty_id: Mapped[int | None] = mapped_column(
        ForeignKey("counterparties.id"), index=True, nullable=True
    )
    counterparty_global_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    organization_global_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    is_edo: Mapped[bool] = mapped_column(Boolean, default=False, server_default="0")
    is_annulled: Mapped[bool] = mapped_column(Boolean, default=False, server_default="0")


class ProductModel(SyncedEntityMixin, Base):
    """Catalog item."""

    __tablename__ = "products"

    name: Mapped[str] = mapped_column(String(500), nullable=False)
    code: Mapped[str | None] = mapped_column(String(50), index=True, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[float] = mapped_column(Float, default=0.0)
    unit: Mapped[str | None] = mapped_column(String(20), nullable=True)
    vat_rate: Mapped[str | None] = mapped_column(String(20), nullable=True)


class CustomerOrderModel(SyncedEntityMixin, Base):
    """Customer order, mirrored to the remote CRM as an invoice."""

    __tablename__ = "customer_orders"

    number: Mapped[str] = mapped_column(String(50), nullable=False)
    order_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    counterparty_id: Mapped[int | None] = mapped_column(
        ForeignKey("counterparties.id"), index=True, nullable=True
    )
    counterparty_global_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    contract_id: Mapped[int | None] = mapped_column(
        ForeignKey("contracts.id"), index=True, nullable=True
    )
    contract_global_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    organization_global_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    amount: Mapped[float] = mapped_column(Float, default=0.0)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)


class CustomerOrderLineModel(Base):
    """One line of a customer order (pushed together with its order)."""

    __tablename__ = "customer_order_lines"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("customer_orders.id", ondelete="CASCADE"), index=True, nullable=False
    )
    product_id: Mapped[int | None] = mapped_column(ForeignKey("products.id"), nullable=True)
    product_global_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    product_name: Mapped[str] = mapped_column(String(500), nullable=False)
    quantity: Mapped[float] = mapped_column(Float, default=1.0)
    price: Mapped[float] = mapped_column(Float, default=0.0)
    amount: Mapped[float] = mapped_column(Float, default=0.0)


class OrderPaymentStatusModel(SyncedEntityMixin, Base):
    """Payment state register, one row per customer order."""

    __tablename__ = "order_payment_statuses"

    order_global_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    customer_order_id: Mapped[int | None] = mapped_column(
        ForeignKey("customer_orders.id"), index=True, nullable=True
    )
    payment_status: Mapped[str] = mapped_column(String(100), nullable=False)


class OrderShipmentStatusModel(SyncedEntityMixin, Base):
    """Shipment state register, one row per customer order."""

    __tablename__ = "order_shipment_statuses"

    order_global_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    customer_order_id: Mapped[int | None] = mapped_column(
        ForeignKey("customer_orders.id"), index=True, nullable=True
    )
    shipment_status: Mapped[str] = mapped_column(String(100), nullable=False)
