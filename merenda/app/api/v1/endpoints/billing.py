from __future__ import annotations

from dataclasses import asdict
from datetime import date

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from merenda.app.api.deps import (
    get_billing_service,
    get_ledger,
    get_queries,
    get_removal_service,
    get_tenant_id,
    get_user_id,
)
from merenda.app.db.models.core_types import BillingStatus
from merenda.app.schemas.billing import BillingDetailRead, BillingItemRead, BillingRead
from merenda.services.billing import BillingPreview, BillingService
from merenda.services.consumption import ConsumptionLedger
from merenda.services.queries import BillingQueries
from merenda.services.redistribution import ModalityRemovalService

router = APIRouter(prefix="/billing")


# ---------- Schemas ----------
class BillingCreate(BaseModel):
    billing_date: date | None = None
    observations: str | None = Field(default=None, max_length=2000)


class ModalityRemoval(BaseModel):
    contract_id: int
    modality_id: int


# ---------- Helpers ----------
def _preview_out(preview: BillingPreview) -> dict:
    out = asdict(preview)
    out["can_generate"] = preview.can_generate
    return out


def _billing_out(billing) -> dict:
    return BillingDetailRead.model_validate(billing).model_dump()


# ---------- Pedido ----------
@router.get("/orders/{order_id}/preview")
def preview_billing(
    order_id: int,
    tenant_id: int = Depends(get_tenant_id),
    service: BillingService = Depends(get_billing_service),
):
    return _preview_out(service.preview(tenant_id, order_id))


@router.post("/orders/{order_id}", status_code=201)
def generate_billing(
    order_id: int,
    payload: BillingCreate | None = None,
    tenant_id: int = Depends(get_tenant_id),
    user_id: int | None = Depends(get_user_id),
    service: BillingService = Depends(get_billing_service),
):
    payload = payload or BillingCreate()
    result = service.generate(
        tenant_id,
        order_id,
        user_id=user_id,
        observations=payload.observations,
        billing_date=payload.billing_date,
    )
    return {
        "billing": _billing_out(result.billing),
        "preview": _preview_out(result.preview),
    }


@router.get("/orders/{order_id}/billings")
def list_order_billings(
    order_id: int,
    tenant_id: int = Depends(get_tenant_id),
    queries: BillingQueries = Depends(get_queries),
):
    return [BillingRead.model_validate(b).model_dump() for b in queries.billings_for_order(tenant_id, order_id)]


# ---------- Faturamento ----------
@router.get("")
def list_billings(
    order_id: int | None = None,
    status: BillingStatus | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    tenant_id: int = Depends(get_tenant_id),
    queries: BillingQueries = Depends(get_queries),
):
    result = queries.list_billings(
        tenant_id,
        order_id=order_id,
        status=status,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
    )
    return asdict(result)


@router.get("/{billing_id}")
def get_billing(
    billing_id: int,
    tenant_id: int = Depends(get_tenant_id),
    queries: BillingQueries = Depends(get_queries),
):
    return _billing_out(queries.get_billing(tenant_id, billing_id))


@router.get("/{billing_id}/summary")
def billing_summary(
    billing_id: int,
    tenant_id: int = Depends(get_tenant_id),
    queries: BillingQueries = Depends(get_queries),
):
    return asdict(queries.billing_summary(tenant_id, billing_id))


@router.delete("/{billing_id}")
def cancel_billing(
    billing_id: int,
    tenant_id: int = Depends(get_tenant_id),
    user_id: int | None = Depends(get_user_id),
    service: BillingService = Depends(get_billing_service),
):
    return _billing_out(service.cancel_billing(tenant_id, billing_id, user_id=user_id))


# ---------- Consommation ----------
@router.post("/{billing_id}/consumption")
def register_consumption(
    billing_id: int,
    tenant_id: int = Depends(get_tenant_id),
    user_id: int | None = Depends(get_user_id),
    ledger: ConsumptionLedger = Depends(get_ledger),
):
    return _billing_out(ledger.register_all(tenant_id, billing_id, user_id=user_id))


@router.delete("/{billing_id}/consumption")
def reverse_consumption(
    billing_id: int,
    tenant_id: int = Depends(get_tenant_id),
    user_id: int | None = Depends(get_user_id),
    ledger: ConsumptionLedger = Depends(get_ledger),
):
    return _billing_out(ledger.reverse_all(tenant_id, billing_id, user_id=user_id))


@router.post("/{billing_id}/items/{item_id}/consumption")
def register_item_consumption(
    billing_id: int,
    item_id: int,
    tenant_id: int = Depends(get_tenant_id),
    user_id: int | None = Depends(get_user_id),
    ledger: ConsumptionLedger = Depends(get_ledger),
):
    item = ledger.register_item(tenant_id, item_id, billing_id=billing_id, user_id=user_id)
    return BillingItemRead.model_validate(item).model_dump()


@router.delete("/{billing_id}/items/{item_id}/consumption")
def reverse_item_consumption(
    billing_id: int,
    item_id: int,
    tenant_id: int = Depends(get_tenant_id),
    user_id: int | None = Depends(get_user_id),
    ledger: ConsumptionLedger = Depends(get_ledger),
):
    item = ledger.reverse_item(tenant_id, item_id, billing_id=billing_id, user_id=user_id)
    return BillingItemRead.model_validate(item).model_dump()


# ---------- Modalidades ----------
@router.post("/{billing_id}/remove-modality")
def remove_modality(
    billing_id: int,
    payload: ModalityRemoval,
    tenant_id: int = Depends(get_tenant_id),
    user_id: int | None = Depends(get_user_id),
    service: ModalityRemovalService = Depends(get_removal_service),
):
    result = service.remove_modality_items(
        tenant_id,
        billing_id,
        payload.contract_id,
        payload.modality_id,
        user_id=user_id,
    )
    return {
        "billing": _billing_out(result.billing),
        "removed_items": result.removed_items,
        "removed_quantity": result.removed_quantity,
        "redistributed": [asdict(r) for r in result.redistributed],
        "dropped_quantity": result.dropped_quantity,
    }
