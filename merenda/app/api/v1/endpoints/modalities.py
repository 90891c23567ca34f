from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends

from merenda.app.api.deps import get_balance_service, get_tenant_id
from merenda.services.balances import BalanceService

router = APIRouter(prefix="/modalities")


@router.get("/percentages")
def modality_percentages(
    tenant_id: int = Depends(get_tenant_id),
    service: BalanceService = Depends(get_balance_service),
):
    return [asdict(w) for w in service.modality_percentages(tenant_id)]
