from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from merenda.app.db.models.models_v1 import BillingSequence


def next_billing_number(
    db: Session,
    *,
    tenant_id: int,
    year: int,
    prefix: str = "FAT",
    padding: int = 6,
) -> str:
    """
    FAT2026000001, FAT2026000002, ...

    Compteur par (tenant, préfixe, année) verrouillé FOR UPDATE : deux
    générations concurrentes ne peuvent pas tirer le même numéro, et un
    faturamento annulé ne libère jamais son numéro.
    """
    stmt = (
        select(BillingSequence)
        .where(BillingSequence.tenant_id == tenant_id)
        .where(BillingSequence.prefix == prefix)
        .where(BillingSequence.year == year)
        .with_for_update()
    )
    row = db.execute(stmt).scalar_one_or_none()

    if not row:
        row = BillingSequence(tenant_id=tenant_id, prefix=prefix, year=year, last_number=0)
        db.add(row)
        db.flush()

    row.last_number = int(row.last_number or 0) + 1
    db.flush()

    return f"{prefix}{year}{str(row.last_number).zfill(padding)}"
