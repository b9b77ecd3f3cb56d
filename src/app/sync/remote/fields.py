"""Remote entity specs -- where each local entity type lives in the CRM.

All synchronised objects are reached through the generic crm.item.*
methods, distinguished by entityTypeId. Each spec names the custom
fields carrying the global id and the "last pushed" stamp, plus any
fixed filter (companies are split into own organizations and
counterparties by the isMyCompany flag).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from src.app.sync.schemas import EntityType

# ── Remote field names ──────────────────────────────────────────────────────

ID_FIELD = "id"
MODIFIED_FIELD = "updatedTime"
GLOBAL_ID_FIELD = "ufCrmGlobalId"
LAST_PUSHED_FIELD = "ufCrmLastPushedAt"

PAYMENT_STATUS_FIELD = "ufCrmPaymentStatus"
SHIPMENT_STATUS_FIELD = "ufCrmShipmentStatus"

# ── Remote entityTypeIds ────────────────────────────────────────────────────

CONTACT_TYPE_ID = 3
COMPANY_TYPE_ID = 4
INVOICE_TYPE_ID = 31
CONTRACT_TYPE_ID = 1064
PRODUCT_TYPE_ID = 1068


@dataclass(frozen=True)
class RemoteEntitySpec:
    """Location and bookkeeping fields of one entity type on the remote side."""

    entity_type_id: int
    title: str
    base_filter: dict[str, Any] = field(default_factory=dict)
    global_id_field: str = GLOBAL_ID_FIELD
    last_pushed_field: str = LAST_PUSHED_FIELD
    modified_field: str = MODIFIED_FIELD

    def list_filter(self, **extra: Any) -> dict[str, Any]:
        return {**self.base_filter, **extra}


_ORGANIZATION = RemoteEntitySpec(
    entity_type_id=COMPANY_TYPE_ID, title="company", base_filter={"isMyCompany": "Y"}
)
_COUNTERPARTY = RemoteEntitySpec(
    entity_type_id=COMPANY_TYPE_ID, title="company", base_filter={"isMyCompany": "N"}
)
_CONTACT = RemoteEntitySpec(entity_type_id=CONTACT_TYPE_ID, title="contact")
_CONTRACT = RemoteEntitySpec(entity_type_id=CONTRACT_TYPE_ID, title="contract")
_PRODUCT = RemoteEntitySpec(entity_type_id=PRODUCT_TYPE_ID, title="product")
_INVOICE = RemoteEntitySpec(entity_type_id=INVOICE_TYPE_ID, title="invoice")

REMOTE_SPECS: dict[EntityType, RemoteEntitySpec] = {
    EntityType.ORGANIZATION: _ORGANIZATION,
    EntityType.COUNTERPARTY: _COUNTERPARTY,
    EntityType.CONTACT: _CONTACT,
    EntityType.CONTRACT: _CONTRACT,
    EntityType.PRODUCT: _PRODUCT,
    EntityType.CUSTOMER_ORDER: _INVOICE,
    # Status registers update the invoice that mirrors their order
    EntityType.ORDER_PAYMENT_STATUS: _INVOICE,
    EntityType.ORDER_SHIPMENT_STATUS: _INVOICE,
}


def spec_for(entity_type: EntityType) -> RemoteEntitySpec:
    try:
        return REMOTE_SPECS[EntityType(entity_type)]
    except KeyError as exc:
        raise ValueError(f"No remote spec for entity type {entity_type!r}") from exc


# ── Status enumerations ─────────────────────────────────────────────────────

# Local status -> remote list value id
PAYMENT_STATUS_VALUES: dict[str, str] = {
    "unpaid": "45",
    "paid": "47",
    "partially_paid": "49",
}

SHIPMENT_STATUS_VALUES: dict[str, str] = {
    "not_shipped": "51",
    "shipped": "53",
    "partially_shipped": "55",
}

# Local VAT rate -> remote VAT id
VAT_RATE_VALUES: dict[str, int] = {
    "none": 1,
    "0": 3,
    "10": 5,
    "20": 7,
}
DEFAULT_VAT_ID = 7
