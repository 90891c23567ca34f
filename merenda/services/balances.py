"""
Administration des saldos par modalidade : saisie du saldo initial,
consommation manuelle, consultation et historique.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from merenda.app.db.models.models_v1 import (
    ConsumptionMovement,
    Contract,
    ContractProduct,
    Modality,
    ModalityBalance,
    Product,
)
from merenda.services.allocation import ModalityWeight, compute_percentages
from merenda.services.consumption import debit
from merenda.services.errors import (
    BalanceNotFoundError,
    InvalidQuantityError,
    ModalityNotFoundError,
)

logger = logging.getLogger(__name__)


@dataclass
class BalanceView:
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
    available_quantity: int
    active: bool


@dataclass
class ConsumptionReceipt:
    movement: ConsumptionMovement
    balance_id: int
    quantity: int
    previous_available: int
    current_available: int


def _balance_query(tenant_id: int):
    return (
        select(ModalityBalance, ContractProduct, Contract, Product, Modality)
        .join(ContractProduct, ContractProduct.id == ModalityBalance.contract_product_id)
        .join(Contract, Contract.id == ContractProduct.contract_id)
        .join(Product, Product.id == ContractProduct.product_id)
        .join(Modality, Modality.id == ModalityBalance.modality_id)
        .where(Contract.tenant_id == tenant_id)
    )


def _to_view(row) -> BalanceView:
    balance, cp, contract, product, modality = row
    return BalanceView(
        id=balance.id,
        contract_id=contract.id,
        contract_number=contract.number,
        contract_product_id=cp.id,
        product_id=product.id,
        product_name=product.name,
        modality_id=modality.id,
        modality_name=modality.name,
        initial_quantity=balance.initial_quantity,
        consumed_quantity=balance.consumed_quantity,
        available_quantity=balance.available_quantity,
        active=balance.active,
    )


def _lock_tenant_balance(db: Session, *, tenant_id: int, balance_id: int) -> ModalityBalance:
    balance = db.execute(
        select(ModalityBalance)
        .join(ContractProduct, ContractProduct.id == ModalityBalance.contract_product_id)
        .join(Contract, Contract.id == ContractProduct.contract_id)
        .where(ModalityBalance.id == balance_id)
        .where(Contract.tenant_id == tenant_id)
        .with_for_update(of=ModalityBalance)
    ).scalar_one_or_none()
    if not balance:
        raise BalanceNotFoundError(f"Balance {balance_id} not found")
    return balance


class BalanceService:
    def __init__(self, sessions: sessionmaker) -> None:
        self._sessions = sessions

    def modality_percentages(self, tenant_id: int) -> list[ModalityWeight]:
        with self._sessions() as db:
            modalities = (
                db.execute(
                    select(Modality)
                    .where(Modality.tenant_id == tenant_id)
                    .where(Modality.active.is_(True))
                    .order_by(Modality.name, Modality.id)
                )
                .scalars()
                .all()
            )
            return compute_percentages(modalities)

    def list_balances(self, tenant_id: int, *, contract_id: int | None = None) -> list[BalanceView]:
        stmt = _balance_query(tenant_id).order_by(Contract.number, Product.name, Modality.name)
        if contract_id is not None:
            stmt = stmt.where(Contract.id == contract_id)
        with self._sessions() as db:
            return [_to_view(row) for row in db.execute(stmt).all()]

    def set_initial_quantity(
        self,
        tenant_id: int,
        contract_product_id: int,
        modality_id: int,
        initial_quantity: int,
    ) -> BalanceView:
        """Crée ou met à jour le saldo initial (upsert sous verrou)."""
        if initial_quantity < 0:
            raise InvalidQuantityError("Initial quantity must not be negative")

        with self._sessions.begin() as db:
            cp = db.execute(
                select(ContractProduct)
                .join(Contract, Contract.id == ContractProduct.contract_id)
                .where(ContractProduct.id == contract_product_id)
                .where(Contract.tenant_id == tenant_id)
            ).scalar_one_or_none()
            if not cp:
                raise BalanceNotFoundError(f"Contract product {contract_product_id} not found")

            modality = db.execute(
                select(Modality).where(Modality.id == modality_id).where(Modality.tenant_id == tenant_id)
            ).scalar_one_or_none()
            if not modality:
                raise ModalityNotFoundError(f"Modality {modality_id} not found")

            balance = db.execute(
                select(ModalityBalance)
                .where(ModalityBalance.contract_product_id == cp.id)
                .where(ModalityBalance.modality_id == modality.id)
                .with_for_update()
            ).scalar_one_or_none()

            created = balance is None
            if created:
                balance = ModalityBalance(
                    contract_product_id=cp.id,
                    modality_id=modality.id,
                    initial_quantity=initial_quantity,
                    consumed_quantity=0,
                    active=True,
                )
                db.add(balance)
            else:
                if initial_quantity < balance.consumed_quantity:
                    raise InvalidQuantityError(
                        f"Initial quantity {initial_quantity} is below consumed quantity {balance.consumed_quantity}"
                    )
                balance.initial_quantity = initial_quantity
            db.flush()

            logger.info(
                "balance %s tenant=%s contract_product=%s modality=%s initial=%s",
                "created" if created else "updated", tenant_id, cp.id, modality.id, initial_quantity,
            )
            row = db.execute(_balance_query(tenant_id).where(ModalityBalance.id == balance.id)).one()
            return _to_view(row)

    def consume(
        self,
        tenant_id: int,
        balance_id: int,
        quantity: int,
        *,
        note: str | None = None,
        user_id: int | None = None,
    ) -> ConsumptionReceipt:
        """Consommation manuelle, hors faturamento."""
        with self._sessions.begin() as db:
            balance = _lock_tenant_balance(db, tenant_id=tenant_id, balance_id=balance_id)
            previous = int(balance.available_quantity)
            mv = debit(
                db,
                balance,
                quantity,
                note=note or f"Manual consumption of {quantity} on balance {balance.id}",
                user_id=user_id,
            )
            db.flush()

            logger.info(
                "manual consumption tenant=%s balance=%s qty=%s available=%s->%s",
                tenant_id, balance.id, quantity, previous, balance.available_quantity,
            )
            return ConsumptionReceipt(
                movement=mv,
                balance_id=balance.id,
                quantity=quantity,
                previous_available=previous,
                current_available=int(balance.available_quantity),
            )

    def history(self, tenant_id: int, balance_id: int) -> list[ConsumptionMovement]:
        with self._sessions() as db:
            found = db.execute(
                _balance_query(tenant_id).where(ModalityBalance.id == balance_id)
            ).first()
            if not found:
                raise BalanceNotFoundError(f"Balance {balance_id} not found")
            return list(
                db.execute(
                    select(ConsumptionMovement)
                    .where(ConsumptionMovement.modality_balance_id == balance_id)
                    .order_by(ConsumptionMovement.created_at.desc(), ConsumptionMovement.id.desc())
                )
                .scalars()
                .all()
            )
