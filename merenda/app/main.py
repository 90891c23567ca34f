import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from merenda.app.api.v1.router import router as v1_router
from merenda.app.config import get_settings
from merenda.services.errors import BillingError, InternalAllocationError

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.APP_NAME, version="0.1.0")


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(InternalAllocationError)
async def allocation_error_handler(request: Request, exc: InternalAllocationError):
    logger.error("allocation invariant violated on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Internal allocation error", "code": "internal_allocation"})


app.include_router(v1_router, prefix=settings.API_PREFIX)
