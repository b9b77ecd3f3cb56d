"""Accounting repository -- typed lookups and writes over synchronised entities.

AccountingRepository is bound to one AsyncSession so that every write
made while processing a single queue entry or pulled item joins the
caller's transaction. It never commits; the caller owns the transaction.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.accounting.models import (
    ContactPersonModel,
    ContractModel,
    CounterpartyModel,
    CustomerOrderLineModel,
    CustomerOrderModel,
    OrderPaymentStatusModel,
    OrderShipmentStatusModel,
    OrganizationModel,
    ProductModel,
)
from src.app.sync.schemas import EntityType

logger = structlog.get_logger(__name__)


MODEL_BY_ENTITY_TYPE: dict[EntityType, type] = {
    EntityType.ORGANIZATION: OrganizationModel,
    EntityType.COUNTERPARTY: CounterpartyModel,
    EntityType.CONTACT: ContactPersonModel,
    EntityType.CONTRACT: ContractModel,
    EntityType.PRODUCT: ProductModel,
    EntityType.CUSTOMER_ORDER: CustomerOrderModel,
    EntityType.ORDER_PAYMENT_STATUS: OrderPaymentStatusModel,
    EntityType.ORDER_SHIPMENT_STATUS: OrderShipmentStatusModel,
}

# Column holding the natural key used as the last reconciliation fallback
BUSINESS_KEY_COLUMN: dict[EntityType, str] = {
    EntityType.ORGANIZATION: "inn",
    EntityType.COUNTERPARTY: "inn",
    EntityType.PRODUCT: "code",
}


class AccountingRepository:
    """Async CRUD over the synchronised accounting tables.

    Args:
        session: Session whose transaction all reads and writes join.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @property
    def session(self) -> AsyncSession:
        return self._session

    @staticmethod
    def model_for(entity_type: EntityType) -> type:
        try:
            return MODEL_BY_ENTITY_TYPE[EntityType(entity_type)]
        except KeyError as exc:
            raise ValueError(f"No local model for entity type {entity_type!r}") from exc

    # ── Lookups ─────────────────────────────────────────────────────────────

    async def find_by_id(self, entity_type: EntityType, local_id: int) -> Any | None:
        return await self._session.get(self.model_for(entity_type), local_id)

    async def find_by_external_id(
        self, entity_type: EntityType, external_ref_id: str | int | None
    ) -> Any | None:
        if external_ref_id in (None, ""):
            return None
        model = self.model_for(entity_type)
        stmt = select(model).where(model.external_ref_id == str(external_ref_id))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_global_id(
        self, entity_type: EntityType, global_id: str | None
    ) -> Any | None:
        if not global_id:
            return None
        model = self.model_for(entity_type)
        stmt = select(model).where(model.global_id == global_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_business_key(
        self, entity_type: EntityType, value: str | None
    ) -> list[Any]:
        """Return live (not deletion-marked) rows matching the business key.

        Entity types without a business key always return an empty list.
        """
        column_name = BUSINESS_KEY_COLUMN.get(EntityType(entity_type))
        if column_name is None or not value:
            return []
        model = self.model_for(entity_type)
        stmt = (
            select(model)
            .where(
                getattr(model, column_name) == value,
                model.deletion_mark.is_(False),
            )
            .order_by(model.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def order_lines(self, order_id: int) -> list[CustomerOrderLineModel]:
        stmt = (
            select(CustomerOrderLineModel)
            .where(CustomerOrderLineModel.order_id == order_id)
            .order_by(CustomerOrderLineModel.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    # ── Writes ──────────────────────────────────────────────────────────────

    def new(self, entity_type: EntityType, **fields: Any) -> Any:
        """Instantiate (but do not persist) an empty local entity."""
        return self.model_for(entity_type)(**fields)

    async def save(self, entity: Any) -> Any:
        """Add the entity to the session and flush so it gets its id."""
        self._session.add(entity)
        await self._session.flush()
        return entity

    async def replace_order_lines(
        self, order_id: int, lines: list[CustomerOrderLineModel]
    ) -> list[CustomerOrderLineModel]:
        """Delete an order's lines and insert the given ones in their place."""
        await self._session.execute(
            delete(CustomerOrderLineModel).where(CustomerOrderLineModel.order_id == order_id)
        )
        for line in lines:
            line.order_id = order_id
        self._session.add_all(lines)
        await self._session.flush()
        return lines

    async def soft_delete(self, entity: Any) -> Any:
        entity.deletion_mark = True
        await self.save(entity)
        logger.info(
            "accounting.entity_soft_deleted",
            table=entity.__tablename__,
            local_id=entity.id,
        )
        return entity
