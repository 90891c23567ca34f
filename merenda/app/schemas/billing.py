from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel

from merenda.app.db.models.core_types import BillingStatus


class BillingItemRead(BaseModel):
    id: int
    order_item_id: int
    modality_id: int
    contract_id: int
    supplier_id: int
    product_id: int

    quantity_original: int
    quantity_modality: int
    percentual_modality: Decimal
    unit_price: Decimal
    total_value: Decimal

    consumption_registered: bool
    consumption_registered_at: datetime | None = None

    class Config:
        from_attributes = True


class BillingRead(BaseModel):
    id: int
    tenant_id: int
    order_id: int
    number: str
    billing_date: date
    status: BillingStatus
    total_value: Decimal
    observations: str | None = None
    created_by: int | None = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class BillingDetailRead(BillingRead):
    items: list[BillingItemRead] = []
