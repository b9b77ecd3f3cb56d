"""Concrete outbound processors, one per synchronised entity type."""

from __future__ import annotations

from typing import Any

import structlog

from src.app.accounting.models import (
    ContactPersonModel,
    ContractModel,
    CounterpartyModel,
    CustomerOrderModel,
    OrganizationModel,
    ProductModel,
)
from src.app.accounting.repository import AccountingRepository
from src.app.sync.clock import ensure_aware
from src.app.sync.exceptions import DependencyNotReadyError, ValidationError
from src.app.sync.outbound.base import OutboundProcessor, clean_string, validate_inn
from src.app.sync.remote.fields import (
    DEFAULT_VAT_ID,
    LAST_PUSHED_FIELD,
    PAYMENT_STATUS_FIELD,
    PAYMENT_STATUS_VALUES,
    SHIPMENT_STATUS_FIELD,
    SHIPMENT_STATUS_VALUES,
    VAT_RATE_VALUES,
)
from src.app.sync.remote.payloads import (
    RemoteCompany,
    RemoteContact,
    RemoteContract,
    RemoteInvoice,
    RemoteProduct,
    RemoteProductRow,
)
from src.app.sync.schemas import EntityType

logger = structlog.get_logger(__name__)


# ── Companies ───────────────────────────────────────────────────────────────


class OrganizationProcessor(OutboundProcessor):
    """Own legal entity -> remote company flagged as "my company"."""

    entity_type = EntityType.ORGANIZATION

    def validate(self, entity: OrganizationModel) -> None:
        if not clean_string(entity.name):
            raise ValidationError(f"Organization {entity.id} has no name")
        validate_inn(entity.inn, f"organization {entity.id}")

    def map_fields(self, entity: OrganizationModel, deps: dict[str, Any]) -> dict[str, Any]:
        return RemoteCompany(
            title=clean_string(entity.name),
            inn=entity.inn,
            kpp=entity.kpp,
            is_my_company=True,
            global_id=entity.global_id,
            last_pushed_at=self.push_stamp(),
        ).to_fields()


class CounterpartyProcessor(OutboundProcessor):
    """Counterparty -> remote company."""

    entity_type = EntityType.COUNTERPARTY

    def validate(self, entity: CounterpartyModel) -> None:
        if not clean_string(entity.name):
            raise ValidationError(f"Counterparty {entity.id} has no name")
        validate_inn(entity.inn, f"counterparty {entity.id}")

    def map_fields(self, entity: CounterpartyModel, deps: dict[str, Any]) -> dict[str, Any]:
        return RemoteCompany(
            title=clean_string(entity.name),
            inn=entity.inn,
            kpp=entity.kpp,
            phone=entity.phone,
            email=entity.email,
            comments=clean_string(entity.description),
            is_my_company=False,
            global_id=entity.global_id,
            last_pushed_at=self.push_stamp(),
        ).to_fields()


# ── Contacts ────────────────────────────────────────────────────────────────


class ContactProcessor(OutboundProcessor):
    """Contact person -> remote contact attached to the counterparty's company."""

    entity_type = EntityType.CONTACT

    def validate(self, entity: ContactPersonModel) -> None:
        if not clean_string(entity.first_name):
            raise ValidationError(f"Contact {entity.id} has no first name")
        if not entity.counterparty_global_id:
            raise ValidationError(f"Contact {entity.id} has no counterparty")

    async def resolve_dependencies(
        self, entity: ContactPersonModel, repo: AccountingRepository
    ) -> dict[str, Any]:
        counterparty = await repo.find_by_global_id(
            EntityType.COUNTERPARTY, entity.counterparty_global_id
        )
        if counterparty is not None:
            validate_inn(counterparty.inn, f"counterparty of contact {entity.id}")
        return {
            "company_id": await self.resolve_parent(
                EntityType.COUNTERPARTY, entity.counterparty_global_id, repo
            ),
        }

    def map_fields(self, entity: ContactPersonModel, deps: dict[str, Any]) -> dict[str, Any]:
        return RemoteContact(
            first_name=clean_string(entity.first_name),
            last_name=clean_string(entity.last_name),
            middle_name=clean_string(entity.middle_name),
            position=clean_string(entity.position),
            phone=entity.phone,
            email=entity.email,
            comments=clean_string(entity.description),
            company_id=deps["company_id"],
            global_id=entity.global_id,
            last_pushed_at=self.push_stamp(),
        ).to_fields()


# ── Contracts ───────────────────────────────────────────────────────────────


class ContractProcessor(OutboundProcessor):
    """Contract -> remote contract item linked to the counterparty's company."""

    entity_type = EntityType.CONTRACT

    def validate(self, entity: ContractModel) -> None:
        if not clean_string(entity.number):
            raise ValidationError(f"Contract {entity.id} has no number")
        if not entity.counterparty_global_id:
            raise ValidationError(f"Contract {entity.id} has no counterparty")

    async def resolve_dependencies(
        self, entity: ContractModel, repo: AccountingRepository
    ) -> dict[str, Any]:
        counterparty = await repo.find_by_global_id(
            EntityType.COUNTERPARTY, entity.counterparty_global_id
        )
        return {
            "company_id": await self.resolve_parent(
                EntityType.COUNTERPARTY, entity.counterparty_global_id, repo
            ),
            "company_name": counterparty.name if counterparty is not None else None,
            "my_company_id": await self.resolve_parent(
                EntityType.ORGANIZATION,
                entity.organization_global_id,
                repo,
                required=False,
            ),
        }

    def map_fields(self, entity: ContractModel, deps: dict[str, Any]) -> dict[str, Any]:
        title = f"Contract No. {entity.number}"
        if entity.signed_on:
            title += f" dated {entity.signed_on:%d.%m.%Y}"
        if deps.get("company_name"):
            title += f" with {deps['company_name']}"
        return RemoteContract(
            title=title,
            number=clean_string(entity.number),
            signed_on=entity.signed_on,
            company_id=deps["company_id"],
            my_company_id=deps.get("my_company_id"),
            is_edo=bool(entity.is_edo),
            is_annulled=bool(entity.is_annulled),
            global_id=entity.global_id,
            last_pushed_at=self.push_stamp(),
        ).to_fields()


# ── Products ────────────────────────────────────────────────────────────────


class ProductProcessor(OutboundProcessor):
    """Product -> remote catalog item."""

    entity_type = EntityType.PRODUCT

    def validate(self, entity: ProductModel) -> None:
        if not clean_string(entity.name):
            raise ValidationError(f"Product {entity.id} has no name")

    def map_fields(self, entity: ProductModel, deps: dict[str, Any]) -> dict[str, Any]:
        return RemoteProduct(
            title=clean_string(entity.name),
            code=entity.code,
            price=entity.price or 0.0,
            unit=entity.unit,
            vat_id=VAT_RATE_VALUES.get(entity.vat_rate or "", DEFAULT_VAT_ID),
            comments=clean_string(entity.description),
            active=not entity.deletion_mark,
            global_id=entity.global_id,
            last_pushed_at=self.push_stamp(),
        ).to_fields()


# ── Customer orders ─────────────────────────────────────────────────────────


class CustomerOrderProcessor(OutboundProcessor):
    """Customer order -> remote invoice with product rows.

    Orders dated before SYNC_MIN_ORDER_DATE are never pushed.
    """

    entity_type = EntityType.CUSTOMER_ORDER

    def validate(self, entity: CustomerOrderModel) -> None:
        if not clean_string(entity.number):
            raise ValidationError(f"Customer order {entity.id} has no number")
        if not entity.counterparty_global_id:
            raise ValidationError(f"Customer order {entity.number} has no counterparty")
        order_date = ensure_aware(entity.order_date)
        if order_date is None:
            raise ValidationError(f"Customer order {entity.number} has no date")
        if order_date.date() < self._settings.SYNC_MIN_ORDER_DATE:
            raise ValidationError(
                f"Customer order {entity.number} dated {order_date.date()} is before "
                f"{self._settings.SYNC_MIN_ORDER_DATE}"
            )

    async def resolve_dependencies(
        self, entity: CustomerOrderModel, repo: AccountingRepository
    ) -> dict[str, Any]:
        rows = []
        for line in await repo.order_lines(entity.id):
            product = (
                await repo.find_by_id(EntityType.PRODUCT, line.product_id)
                if line.product_id
                else None
            )
            rows.append(
                RemoteProductRow(
                    product_name=line.product_name,
                    product_id=_remote_id_of(product),
                    price=line.price or 0.0,
                    quantity=line.quantity or 0.0,
                )
            )
        return {
            "company_id": await self.resolve_parent(
                EntityType.COUNTERPARTY, entity.counterparty_global_id, repo
            ),
            "contract_id": await self.resolve_parent(
                EntityType.CONTRACT, entity.contract_global_id, repo, required=False
            ),
            "my_company_id": await self.resolve_parent(
                EntityType.ORGANIZATION,
                entity.organization_global_id,
                repo,
                required=False,
            ),
            "rows": rows,
        }

    def map_fields(self, entity: CustomerOrderModel, deps: dict[str, Any]) -> dict[str, Any]:
        return RemoteInvoice(
            title=f"Order No. {entity.number}",
            number=clean_string(entity.number),
            order_date=ensure_aware(entity.order_date),
            company_id=deps["company_id"],
            contract_id=deps.get("contract_id"),
            my_company_id=deps.get("my_company_id"),
            amount=entity.amount or 0.0,
            comments=clean_string(entity.comment),
            product_rows=deps.get("rows") or None,
            global_id=entity.global_id,
            last_pushed_at=self.push_stamp(),
        ).to_fields()


# ── Order status registers ──────────────────────────────────────────────────


class _OrderStatusProcessor(OutboundProcessor):
    """Shared flow for status registers: update the order's remote invoice."""

    status_field: str
    status_values: dict[str, str]
    status_attr: str

    def validate(self, entity: Any) -> None:
        if not entity.order_global_id:
            raise ValidationError(f"{self.entity_type.value} {entity.id} has no order reference")
        status = getattr(entity, self.status_attr)
        if status not in self.status_values:
            raise ValidationError(f"Unknown {self.status_attr}: {status!r}")

    async def resolve_dependencies(self, entity: Any, repo: AccountingRepository) -> dict[str, Any]:
        order = await repo.find_by_global_id(EntityType.CUSTOMER_ORDER, entity.order_global_id)
        if order is not None:
            entity.customer_order_id = order.id
        invoice_id = None
        if order is not None and order.external_ref_id:
            invoice_id = int(order.external_ref_id)
        else:
            invoice_id = await self._directory.find_id_by_global_id(
                EntityType.CUSTOMER_ORDER, entity.order_global_id
            )
        if invoice_id is None:
            raise DependencyNotReadyError(
                f"Invoice not synced yet for order {entity.order_global_id}"
            )
        return {"invoice_id": invoice_id}

    def map_fields(self, entity: Any, deps: dict[str, Any]) -> dict[str, Any]:
        return {
            self.status_field: self.status_values[getattr(entity, self.status_attr)],
            LAST_PUSHED_FIELD: self.push_stamp().isoformat(),
        }

    async def locate_remote(self, entity: Any, deps: dict[str, Any] | None = None) -> int | None:
        return (deps or {}).get("invoice_id")

    async def create_or_update_remote(self, remote_id: int | None, fields: dict[str, Any]) -> int:
        if remote_id is None:
            raise DependencyNotReadyError(f"No invoice to update for {self.entity_type.value}")
        return await self._directory.update(self.entity_type, remote_id, fields)


class OrderPaymentStatusProcessor(_OrderStatusProcessor):
    entity_type = EntityType.ORDER_PAYMENT_STATUS
    status_field = PAYMENT_STATUS_FIELD
    status_values = PAYMENT_STATUS_VALUES
    status_attr = "payment_status"


class OrderShipmentStatusProcessor(_OrderStatusProcessor):
    entity_type = EntityType.ORDER_SHIPMENT_STATUS
    status_field = SHIPMENT_STATUS_FIELD
    status_values = SHIPMENT_STATUS_VALUES
    status_attr = "shipment_status"


DEFAULT_PROCESSORS: tuple[type[OutboundProcessor], ...] = (
    OrganizationProcessor,
    CounterpartyProcessor,
    ContactProcessor,
    ContractProcessor,
    ProductProcessor,
    CustomerOrderProcessor,
    OrderPaymentStatusProcessor,
    OrderShipmentStatusProcessor,
)


def _remote_id_of(entity: Any | None) -> int | None:
    if entity is None or not entity.external_ref_id:
        return None
    return int(entity.external_ref_id)
