from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from merenda.app.db.models.core_types import MovementType


class BalanceRead(BaseModel):
    id: int
    contract_id: int
    contract_number: str
    contract_product_id: int
    product_id: int
    product_name: str
    modality_id: int
    modality_name: str

    initial_quantity: int
    consumed_quantity: int
    available_quantity: int  # READ ONLY : initial - consumed
    active: bool

    class Config:
        from_attributes = True


class MovementRead(BaseModel):
    id: int
    modality_balance_id: int
    billing_item_id: int | None = None
    movement_type: MovementType
    quantity: int
    note: str | None = None
    user_id: int | None = None
    created_at: datetime

    class Config:
        from_attributes = True
