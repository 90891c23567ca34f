from __future__ import annotations

from typing import Generator

from fastapi import Depends, Header
from sqlalchemy.orm import Session, sessionmaker

from merenda.app.db.session import SessionLocal
from merenda.services.balances import BalanceService
from merenda.services.billing import BillingService
from merenda.services.consumption import ConsumptionLedger
from merenda.services.queries import BillingQueries
from merenda.services.redistribution import ModalityRemovalService


def get_sessions() -> sessionmaker:
    return SessionLocal


def get_db(sessions: sessionmaker = Depends(get_sessions)) -> Generator[Session, None, None]:
    db = sessions()
    try:
        yield db
    finally:
        db.close()


# Le tenant est résolu en amont (gateway) et transmis en en-tête
def get_tenant_id(x_tenant_id: int = Header(alias="X-Tenant-Id")) -> int:
    return x_tenant_id


def get_user_id(x_user_id: int | None = Header(default=None, alias="X-User-Id")) -> int | None:
    return x_user_id


def get_billing_service(sessions: sessionmaker = Depends(get_sessions)) -> BillingService:
    return BillingService(sessions)


def get_ledger(sessions: sessionmaker = Depends(get_sessions)) -> ConsumptionLedger:
    return ConsumptionLedger(sessions)


def get_removal_service(sessions: sessionmaker = Depends(get_sessions)) -> ModalityRemovalService:
    return ModalityRemovalService(sessions)


def get_queries(sessions: sessionmaker = Depends(get_sessions)) -> BillingQueries:
    return BillingQueries(sessions)


def get_balance_service(sessions: sessionmaker = Depends(get_sessions)) -> BalanceService:
    return BalanceService(sessions)
