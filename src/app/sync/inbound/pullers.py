"""Concrete pullers: counterparty, contact, contract, product and customer order."""

from __future__ import annotations

from typing import Any

import structlog

from src.app.accounting.models import CustomerOrderLineModel
from src.app.accounting.repository import AccountingRepository
from src.app.sync.exceptions import ValidationError
from src.app.sync.inbound.base import AbstractPuller
from src.app.sync.remote.fields import VAT_RATE_VALUES
from src.app.sync.remote.payloads import (
    RemoteCompany,
    RemoteContact,
    RemoteContract,
    RemoteInvoice,
    RemoteProduct,
)
from src.app.sync.schemas import EntityType

logger = structlog.get_logger(__name__)

_VAT_RATE_BY_ID = {value: key for key, value in VAT_RATE_VALUES.items()}


class CounterpartyPuller(AbstractPuller):
    """Remote companies (not flagged as own) -> counterparties."""

    entity_type = EntityType.COUNTERPARTY

    def business_key(self, item: RemoteCompany) -> str | None:
        return item.inn

    async def map_to_local(
        self, item: RemoteCompany, repo: AccountingRepository
    ) -> dict[str, Any]:
        if not item.title:
            raise ValidationError(f"Remote company {item.id} has no title")
        return {
            "name": item.title,
            "inn": item.inn,
            "kpp": item.kpp,
            "phone": item.phone,
            "email": item.email,
            "description": item.comments,
        }


class ContactPuller(AbstractPuller):
    """Remote contacts -> contact persons; the company is ensured first."""

    entity_type = EntityType.CONTACT

    async def map_to_local(
        self, item: RemoteContact, repo: AccountingRepository
    ) -> dict[str, Any]:
        if not item.first_name and not item.last_name:
            raise ValidationError(f"Remote contact {item.id} has no name")
        if not item.company_id:
            raise ValidationError(f"Remote contact {item.id} has no company")

        counterparty = await self._require_parent(
            EntityType.COUNTERPARTY, item.company_id, repo
        )
        return {
            "counterparty_id": counterparty.id,
            "counterparty_global_id": counterparty.global_id,
            "last_name": item.last_name,
            "first_name": item.first_name or item.last_name,
            "middle_name": item.middle_name,
            "position": item.position,
            "phone": item.phone,
            "email": item.email,
            "description": item.comments,
        }


class ContractPuller(AbstractPuller):
    """Remote contracts -> contracts; the counterparty is ensured first."""

    entity_type = EntityType.CONTRACT

    async def map_to_local(
        self, item: RemoteContract, repo: AccountingRepository
    ) -> dict[str, Any]:
        if not item.number:
            raise ValidationError(f"Remote contract {item.id} has no number")
        if not item.company_id:
            raise ValidationError(f"Remote contract {item.id} has no company")

        counterparty = await self._require_parent(
            EntityType.COUNTERPARTY, item.company_id, repo
        )
        organization = await repo.find_by_external_id(
            EntityType.ORGANIZATION, item.my_company_id
        )
        return {
            "number": item.number,
            "signed_on": item.signed_on,
            "counterparty_id": counterparty.id,
            "counterparty_global_id": counterparty.global_id,
            "organization_global_id": organization.global_id if organization else None,
            "is_edo": bool(item.is_edo),
            "is_annulled": bool(item.is_annulled),
        }


class ProductPuller(AbstractPuller):
    """Remote catalog items -> products; inactive items are soft-deleted."""

    entity_type = EntityType.PRODUCT

    def business_key(self, item: RemoteProduct) -> str | None:
        return item.code

    def is_deleted(self, item: RemoteProduct) -> bool:
        return item.active is False

    async def map_to_local(
        self, item: RemoteProduct, repo: AccountingRepository
    ) -> dict[str, Any]:
        if not item.title:
            raise ValidationError(f"Remote product {item.id} has no title")
        fields: dict[str, Any] = {
            "name": item.title,
            "code": item.code,
            "description": item.comments,
            "price": item.price or 0.0,
            "unit": item.unit,
        }
        if item.vat_id is not None:
            fields["vat_rate"] = _VAT_RATE_BY_ID.get(item.vat_id)
        return fields


class CustomerOrderPuller(AbstractPuller):
    """Remote invoices -> customer orders.

    The counterparty is mandatory; the contract is linked when it can be
    resolved and left empty otherwise.

    Product rows replace the order's lines; an invoice without rows keeps
    the existing ones.
    """

    entity_type = EntityType.CUSTOMER_ORDER

    async def map_to_local(
        self, item: RemoteInvoice, repo: AccountingRepository
    ) -> dict[str, Any]:
        if not item.number:
            raise ValidationError(f"Remote invoice {item.id} has no order number")
        if not item.company_id:
            raise ValidationError(f"Remote invoice {item.id} has no company")

        counterparty = await self._require_parent(
            EntityType.COUNTERPARTY, item.company_id, repo
        )
        fields: dict[str, Any] = {
            "number": item.number,
            "order_date": item.order_date,
            "counterparty_id": counterparty.id,
            "counterparty_global_id": counterparty.global_id,
            "amount": item.amount or 0.0,
            "comment": item.comments,
        }

        if item.contract_id:
            contract_global_id = await self._resolver.ensure(
                EntityType.CONTRACT, item.contract_id
            )
            contract = await repo.find_by_global_id(EntityType.CONTRACT, contract_global_id)
            if contract is None:
                logger.warning(
                    "inbound.order_contract_unresolved",
                    remote_id=item.id,
                    contract_ref=item.contract_id,
                )
            else:
                fields["contract_id"] = contract.id
                fields["contract_global_id"] = contract.global_id

        organization = await repo.find_by_external_id(
            EntityType.ORGANIZATION, item.my_company_id
        )
        if organization is not None:
            fields["organization_global_id"] = organization.global_id
        return fields

    async def after_apply(
        self, entity: Any, item: RemoteInvoice, repo: AccountingRepository
    ) -> None:
        if not item.product_rows:
            return
        lines = []
        for row in item.product_rows:
            product = await repo.find_by_external_id(EntityType.PRODUCT, row.product_id)
            lines.append(
                CustomerOrderLineModel(
                    product_id=product.id if product is not None else None,
                    product_global_id=product.global_id if product is not None else None,
                    product_name=row.product_name,
                    quantity=row.quantity,
                    price=row.price,
                    amount=row.quantity * row.price,
                )
            )
        await repo.replace_order_lines(entity.id, lines)
        logger.debug("inbound.order_lines_replaced", order_id=entity.id, lines=len(lines))


DEFAULT_PULLERS: tuple[type[AbstractPuller], ...] = (
    CounterpartyPuller,
    ContactPuller,
    ContractPuller,
    ProductPuller,
    CustomerOrderPuller,
)
