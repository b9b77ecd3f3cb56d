"""Typed payloads for remote CRM items.

Raw crm.item dictionaries are validated into these models as soon as
they cross the boundary (inbound), and outbound field sets are built
from them and dumped by alias. Empty strings, which the CRM uses for
unset fields, are normalised to None; Y/N flags become booleans.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    PlainSerializer,
    field_validator,
)

from src.app.sync.remote.fields import (
    GLOBAL_ID_FIELD,
    LAST_PUSHED_FIELD,
    MODIFIED_FIELD,
    PAYMENT_STATUS_FIELD,
    SHIPMENT_STATUS_FIELD,
)
from src.app.sync.schemas import EntityType


def _yes_no(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().upper() in ("Y", "YES", "1", "TRUE")
    return value


YesNo = Annotated[
    bool,
    BeforeValidator(_yes_no),
    PlainSerializer(lambda v: "Y" if v else "N", return_type=str),
]


class RemoteItem(BaseModel):
    """Fields every synchronised crm.item carries."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int | None = None
    title: str | None = None
    updated_time: datetime | None = Field(None, alias=MODIFIED_FIELD)
    global_id: str | None = Field(None, alias=GLOBAL_ID_FIELD)
    last_pushed_at: datetime | None = Field(None, alias=LAST_PUSHED_FIELD)

    @field_validator("*", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip() == "":
            return None
        return value

    def to_fields(self) -> dict[str, Any]:
        """Outbound field set: aliased, JSON-ready, unset values dropped."""
        return self.model_dump(
            by_alias=True,
            exclude_none=True,
            exclude={"id", "updated_time"},
            mode="json",
        )


class RemoteCompany(RemoteItem):
    inn: str | None = Field(None, alias="ufCrmInn")
    kpp: str | None = Field(None, alias="ufCrmKpp")
    phone: str | None = None
    email: str | None = None
    comments: str | None = None
    is_my_company: YesNo | None = Field(None, alias="isMyCompany")

    @field_validator("inn", "kpp", mode="before")
    @classmethod
    def _digits_as_text(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value


class RemoteContact(RemoteItem):
    first_name: str | None = Field(None, alias="name")
    last_name: str | None = Field(None, alias="lastName")
    middle_name: str | None = Field(None, alias="secondName")
    position: str | None = Field(None, alias="post")
    phone: str | None = None
    email: str | None = None
    comments: str | None = None
    company_id: int | None = Field(None, alias="companyId")


class RemoteContract(RemoteItem):
    number: str | None = Field(None, alias="ufCrmContractNo")
    signed_on: date | None = Field(None, alias="ufCrmContractDate")
    company_id: int | None = Field(None, alias="companyId")
    my_company_id: int | None = Field(None, alias="mycompanyId")
    is_edo: YesNo | None = Field(None, alias="ufCrmIsEdo")
    is_annulled: YesNo | None = Field(None, alias="ufCrmIsAnnulled")


class RemoteProduct(RemoteItem):
    code: str | None = Field(None, alias="ufCrmCode")
    price: float | None = Field(None, alias="ufCrmPrice")
    unit: str | None = Field(None, alias="ufCrmUnit")
    vat_id: int | None = Field(None, alias="ufCrmVatId")
    comments: str | None = None
    active: YesNo | None = Field(None, alias="ufCrmActive")


class RemoteProductRow(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    product_name: str = Field(alias="productName")
    product_id: int | None = Field(None, alias="productId")
    price: float = 0.0
    quantity: float = 1.0


class RemoteInvoice(RemoteItem):
    number: str | None = Field(None, alias="ufCrmOrderNumber")
    order_date: datetime | None = Field(None, alias="begindate")
    company_id: int | None = Field(None, alias="companyId")
    contract_id: int | None = Field(None, alias="parentId1064")
    my_company_id: int | None = Field(None, alias="mycompanyId")
    amount: float | None = Field(None, alias="opportunity")
    comments: str | None = None
    payment_status: str | None = Field(None, alias=PAYMENT_STATUS_FIELD)
    shipment_status: str | None = Field(None, alias=SHIPMENT_STATUS_FIELD)
    product_rows: list[RemoteProductRow] | None = Field(None, alias="productRows")


PAYLOAD_BY_ENTITY_TYPE: dict[EntityType, type[RemoteItem]] = {
    EntityType.ORGANIZATION: RemoteCompany,
    EntityType.COUNTERPARTY: RemoteCompany,
    EntityType.CONTACT: RemoteContact,
    EntityType.CONTRACT: RemoteContract,
    EntityType.PRODUCT: RemoteProduct,
    EntityType.CUSTOMER_ORDER: RemoteInvoice,
    EntityType.ORDER_PAYMENT_STATUS: RemoteInvoice,
    EntityType.ORDER_SHIPMENT_STATUS: RemoteInvoice,
}


def parse_item(entity_type: EntityType, raw: dict[str, Any]) -> RemoteItem:
    """Validate a raw crm.item dict into the entity type's payload model."""
    return PAYLOAD_BY_ENTITY_TYPE[EntityType(entity_type)].model_validate(raw)
