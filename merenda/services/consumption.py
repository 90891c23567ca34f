"""
Ledger de consommation des saldos par modalidade.

Toute écriture sur ModalityBalance.consumed_quantity passe par ``debit`` /
``credit`` de ce module, sur une ligne préalablement verrouillée
(FOR UPDATE). Ordre de verrouillage, partout :

    billing -> billing_items -> saldos (triés par contrat, produit, modalidade)

Invariant maintenu dans les deux sens :
    billing.status == consumed  <=>  tous les items consumption_registered
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, selectinload, sessionmaker

from merenda.app.db.models.core_types import BillingStatus, MovementType
from merenda.app.db.models.models_v1 import (
    Billing,
    BillingItem,
    ConsumptionMovement,
    ContractProduct,
    ModalityBalance,
)
from merenda.services.errors import (
    AlreadyConsumedError,
    BillingItemNotFoundError,
    BillingNotFoundError,
    InsufficientBalanceError,
    InvalidBillingStateError,
    InvalidQuantityError,
    ModalityNotFoundError,
    NotRegisteredError,
)

logger = logging.getLogger(__name__)

BalanceKey = tuple[int, int, int]  # (contract_id, product_id, modality_id)


# ---------- Verrous ----------
def lock_billing(db: Session, *, tenant_id: int, billing_id: int) -> Billing:
    billing = (
        db.execute(
            select(Billing)
            .options(selectinload(Billing.items))
            .where(Billing.id == billing_id)
            .where(Billing.tenant_id == tenant_id)
            .with_for_update()
        )
        .scalar_one_or_none()
    )
    if not billing:
        raise BillingNotFoundError(f"Billing {billing_id} not found")
    return billing


def lock_billing_items(db: Session, billing_id: int) -> list[BillingItem]:
    return list(
        db.execute(
            select(BillingItem)
            .where(BillingItem.billing_id == billing_id)
            .order_by(BillingItem.id)
            .with_for_update()
        )
        .scalars()
        .all()
    )


def lock_balance(db: Session, key: BalanceKey) -> ModalityBalance:
    contract_id, product_id, modality_id = key
    balance = (
        db.execute(
            select(ModalityBalance)
            .join(ContractProduct, ContractProduct.id == ModalityBalance.contract_product_id)
            .where(ContractProduct.contract_id == contract_id)
            .where(ContractProduct.product_id == product_id)
            .where(ModalityBalance.modality_id == modality_id)
            .where(ModalityBalance.active.is_(True))
            .with_for_update(of=ModalityBalance)
            # relit la ligne même si elle est déjà dans la session (lock-then-validate)
            .execution_options(populate_existing=True)
        )
        .scalar_one_or_none()
    )
    if not balance:
        raise ModalityNotFoundError(
            f"No active balance for contract {contract_id}, product {product_id}, modality {modality_id}"
        )
    return balance


def lock_balances(db: Session, keys: Iterable[BalanceKey]) -> dict[BalanceKey, ModalityBalance]:
    """Verrouille dans un ordre global stable (évite les deadlocks croisés)."""
    return {key: lock_balance(db, key) for key in sorted(set(keys))}


def item_key(item: BillingItem) -> BalanceKey:
    return (item.contract_id, item.product_id, item.modality_id)


def _load_item_billing_id(
    db: Session, *, tenant_id: int, billing_item_id: int, billing_id: int | None = None
) -> int:
    stmt = (
        select(BillingItem.billing_id)
        .join(Billing, Billing.id == BillingItem.billing_id)
        .where(BillingItem.id == billing_item_id)
        .where(Billing.tenant_id == tenant_id)
    )
    if billing_id is not None:
        stmt = stmt.where(BillingItem.billing_id == billing_id)
    found = db.execute(stmt).scalar_one_or_none()
    if found is None:
        raise BillingItemNotFoundError(f"Billing item {billing_item_id} not found")
    return int(found)


# ---------- Écritures sur saldo (ligne déjà verrouillée) ----------
def debit(
    db: Session,
    balance: ModalityBalance,
    quantity: int,
    *,
    note: str,
    user_id: int | None = None,
    billing_item_id: int | None = None,
) -> ConsumptionMovement:
    if quantity <= 0:
        raise InvalidQuantityError(f"Consumption quantity must be positive, got {quantity}")

    available = balance.available_quantity
    if available < quantity:
        raise InsufficientBalanceError(
            f"Insufficient balance: available {available}, required {quantity}",
            shortfalls=[
                {
                    "balance_id": balance.id,
                    "modality_id": balance.modality_id,
                    "available": available,
                    "required": quantity,
                    "shortfall": quantity - available,
                }
            ],
        )

    balance.consumed_quantity += quantity
    mv = ConsumptionMovement(
        modality_balance_id=balance.id,
        billing_item_id=billing_item_id,
        movement_type=MovementType.consume,
        quantity=quantity,
        note=note[:255],
        user_id=user_id,
    )
    db.add(mv)
    return mv


def credit(
    db: Session,
    balance: ModalityBalance,
    quantity: int,
    *,
    note: str,
    user_id: int | None = None,
    billing_item_id: int | None = None,
    log_reversal: bool = True,
) -> ConsumptionMovement | None:
    """
    Rend ``quantity`` au saldo. Avec ``log_reversal`` on ajoute un mouvement
    REVERSAL (estorno) ; sinon l'appelant retire lui-même les mouvements.
    """
    if quantity <= 0:
        raise InvalidQuantityError(f"Reversal quantity must be positive, got {quantity}")
    if balance.consumed_quantity < quantity:
        raise InvalidQuantityError(
            f"Cannot reverse {quantity} on balance {balance.id}: only {balance.consumed_quantity} consumed"
        )

    balance.consumed_quantity -= quantity
    if not log_reversal:
        return None

    mv = ConsumptionMovement(
        modality_balance_id=balance.id,
        billing_item_id=billing_item_id,
        movement_type=MovementType.reversal,
        quantity=-quantity,
        note=note[:255],
        user_id=user_id,
    )
    db.add(mv)
    return mv


def register_locked_item(
    db: Session,
    billing: Billing,
    item: BillingItem,
    balance: ModalityBalance,
    *,
    user_id: int | None = None,
) -> None:
    debit(
        db,
        balance,
        item.quantity_modality,
        note=f"Billing {billing.number} item {item.id}",
        user_id=user_id,
        billing_item_id=item.id,
    )
    item.consumption_registered = True
    item.consumption_registered_at = datetime.now(timezone.utc)


def reverse_locked_item(
    db: Session,
    billing: Billing,
    item: BillingItem,
    balance: ModalityBalance,
    *,
    user_id: int | None = None,
    log_reversal: bool = False,
) -> None:
    """
    ``log_reversal=False`` (estorno simple) : les mouvements CONSUME liés à
    l'item sont retirés, via la FK billing_item_id.
    ``log_reversal=True`` (retrait de modalidade, annulation) : un mouvement
    REVERSAL est ajouté et l'historique CONSUME est conservé.
    """
    credit(
        db,
        balance,
        item.quantity_modality,
        note=f"Reversal billing {billing.number} item {item.id}",
        user_id=user_id,
        billing_item_id=item.id,
        log_reversal=log_reversal,
    )
    if not log_reversal:
        linked = (
            ConsumptionMovement.billing_item_id == item.id,
            ConsumptionMovement.movement_type == MovementType.consume,
        )
        removed = db.execute(select(ConsumptionMovement.quantity).where(*linked)).scalars().all()
        db.execute(delete(ConsumptionMovement).where(*linked))
        if sum(removed) != item.quantity_modality:
            logger.warning(
                "billing_item=%s removed movements total %s differs from quantity %s",
                item.id,
                sum(removed),
                item.quantity_modality,
            )
    item.consumption_registered = False
    item.consumption_registered_at = None


def sync_billing_status(billing: Billing, items: list[BillingItem]) -> None:
    if billing.status == BillingStatus.cancelled:
        return
    if items and all(i.consumption_registered for i in items):
        billing.status = BillingStatus.consumed
    else:
        billing.status = BillingStatus.generated


def _ensure_not_cancelled(billing: Billing) -> None:
    if billing.status == BillingStatus.cancelled:
        raise InvalidBillingStateError(f"Billing {billing.number} is cancelled")


class ConsumptionLedger:
    """Enregistrement / estorno de la consommation d'un faturamento."""

    def __init__(self, sessions: sessionmaker) -> None:
        self._sessions = sessions

    def register_item(
        self,
        tenant_id: int,
        billing_item_id: int,
        *,
        billing_id: int | None = None,
        user_id: int | None = None,
    ) -> BillingItem:
        with self._sessions.begin() as db:
            billing_id = _load_item_billing_id(
                db, tenant_id=tenant_id, billing_item_id=billing_item_id, billing_id=billing_id
            )
            billing = lock_billing(db, tenant_id=tenant_id, billing_id=billing_id)
            _ensure_not_cancelled(billing)

            items = lock_billing_items(db, billing.id)
            item = next(i for i in items if i.id == billing_item_id)
            if item.consumption_registered:
                raise AlreadyConsumedError(f"Consumption already registered for billing item {item.id}")

            balance = lock_balance(db, item_key(item))
            register_locked_item(db, billing, item, balance, user_id=user_id)
            sync_billing_status(billing, items)

            logger.info(
                "consumption registered tenant=%s billing=%s item=%s balance=%s qty=%s",
                tenant_id, billing.number, item.id, balance.id, item.quantity_modality,
            )
            return item

    def reverse_item(
        self,
        tenant_id: int,
        billing_item_id: int,
        *,
        billing_id: int | None = None,
        user_id: int | None = None,
    ) -> BillingItem:
        with self._sessions.begin() as db:
            billing_id = _load_item_billing_id(
                db, tenant_id=tenant_id, billing_item_id=billing_item_id, billing_id=billing_id
            )
            billing = lock_billing(db, tenant_id=tenant_id, billing_id=billing_id)
            _ensure_not_cancelled(billing)

            items = lock_billing_items(db, billing.id)
            item = next(i for i in items if i.id == billing_item_id)
            if not item.consumption_registered:
                raise NotRegisteredError(f"Consumption not registered for billing item {item.id}")

            balance = lock_balance(db, item_key(item))
            reverse_locked_item(db, billing, item, balance, user_id=user_id)
            sync_billing_status(billing, items)

            logger.info(
                "consumption reversed tenant=%s billing=%s item=%s balance=%s qty=%s",
                tenant_id, billing.number, item.id, balance.id, item.quantity_modality,
            )
            return item

    def register_all(self, tenant_id: int, billing_id: int, *, user_id: int | None = None) -> Billing:
        with self._sessions.begin() as db:
            billing = lock_billing(db, tenant_id=tenant_id, billing_id=billing_id)
            _ensure_not_cancelled(billing)
            if billing.status == BillingStatus.consumed:
                raise AlreadyConsumedError(f"Consumption already registered for billing {billing.number}")

            items = lock_billing_items(db, billing.id)
            if not items:
                raise InvalidBillingStateError(f"Billing {billing.number} has no items")

            pending = [i for i in items if not i.consumption_registered]
            balances = lock_balances(db, (item_key(i) for i in pending))
            for item in pending:
                register_locked_item(db, billing, item, balances[item_key(item)], user_id=user_id)

            sync_billing_status(billing, items)

            logger.info(
                "consumption registered for whole billing tenant=%s billing=%s items=%s",
                tenant_id, billing.number, len(pending),
            )
            return billing

    def reverse_all(self, tenant_id: int, billing_id: int, *, user_id: int | None = None) -> Billing:
        with self._sessions.begin() as db:
            billing = lock_billing(db, tenant_id=tenant_id, billing_id=billing_id)
            _ensure_not_cancelled(billing)

            items = lock_billing_items(db, billing.id)
            registered = [i for i in items if i.consumption_registered]
            if not registered:
                raise NotRegisteredError(f"No consumption registered for billing {billing.number}")

            balances = lock_balances(db, (item_key(i) for i in registered))
            for item in registered:
                reverse_locked_item(db, billing, item, balances[item_key(item)], user_id=user_id)

            sync_billing_status(billing, items)

            logger.info(
                "consumption reversed for whole billing tenant=%s billing=%s items=%s",
                tenant_id, billing.number, len(registered),
            )
            return billing


def movement_total(db: Session, balance_id: int) -> int:
    """Σ mouvements d'un saldo (sert aux contrôles de cohérence)."""
    return int(
        db.execute(
            select(func.coalesce(func.sum(ConsumptionMovement.quantity), 0))
            .where(ConsumptionMovement.modality_balance_id == balance_id)
        ).scalar_one()
    )
