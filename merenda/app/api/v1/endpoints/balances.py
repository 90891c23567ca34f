from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from merenda.app.api.deps import get_balance_service, get_tenant_id, get_user_id
from merenda.app.schemas.balance import BalanceRead, MovementRead
from merenda.services.balances import BalanceService

router = APIRouter(prefix="/balances")


# ---------- Schemas ----------
class BalanceUpsert(BaseModel):
    contract_product_id: int
    modality_id: int
    initial_quantity: int = Field(ge=0)


class ManualConsumption(BaseModel):
    quantity: int = Field(gt=0)
    note: str | None = Field(default=None, max_length=255)


# ---------- Endpoints ----------
@router.get("")
def list_balances(
    contract_id: int | None = None,
    tenant_id: int = Depends(get_tenant_id),
    service: BalanceService = Depends(get_balance_service),
):
    return [
        BalanceRead.model_validate(b).model_dump()
        for b in service.list_balances(tenant_id, contract_id=contract_id)
    ]


@router.put("")
def upsert_balance(
    payload: BalanceUpsert,
    tenant_id: int = Depends(get_tenant_id),
    service: BalanceService = Depends(get_balance_service),
):
    balance = service.set_initial_quantity(
        tenant_id,
        payload.contract_product_id,
        payload.modality_id,
        payload.initial_quantity,
    )
    return BalanceRead.model_validate(balance).model_dump()


@router.post("/{balance_id}/consume")
def consume_balance(
    balance_id: int,
    payload: ManualConsumption,
    tenant_id: int = Depends(get_tenant_id),
    user_id: int | None = Depends(get_user_id),
    service: BalanceService = Depends(get_balance_service),
):
    receipt = service.consume(tenant_id, balance_id, payload.quantity, note=payload.note, user_id=user_id)
    return {
        "movement": MovementRead.model_validate(receipt.movement).model_dump(),
        "balance_id": receipt.balance_id,
        "quantity": receipt.quantity,
        "previous_available": receipt.previous_available,
        "current_available": receipt.current_available,
    }


@router.get("/{balance_id}/history")
def balance_history(
    balance_id: int,
    tenant_id: int = Depends(get_tenant_id),
    service: BalanceService = Depends(get_balance_service),
):
    return [MovementRead.model_validate(m).model_dump() for m in service.history(tenant_id, balance_id)]
