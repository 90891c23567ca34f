from fastapi import APIRouter

from merenda.app.api.v1.endpoints.health import router as health_router
from merenda.app.api.v1.endpoints.billing import router as billing_router
from merenda.app.api.v1.endpoints.balances import router as balances_router
from merenda.app.api.v1.endpoints.modalities import router as modalities_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(billing_router, tags=["billing"])
router.include_router(balances_router, tags=["balances"])
router.include_router(modalities_router, tags=["modalities"])
