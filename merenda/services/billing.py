"""
Faturamento d'un pedido : prévia (lecture seule) et génération transactionnelle.

Protocole de génération (une seule transaction) :
    1. verrou du pedido (FOR UPDATE) puis recherche d'un faturamento vivant
    2. prévia recalculée DANS la transaction
    3. verrou des saldos touchés, puis re-validation (lock-then-validate)
    4. numéro séquentiel par année, insertion entête + items
Les saldos ne sont PAS débités ici : voir merenda.services.consumption.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from merenda.app.config import Settings, get_settings
from merenda.app.db.models.core_types import NON_BILLABLE_ORDER_STATUSES, BillingStatus
from merenda.app.db.models.models_v1 import (
    Billing,
    BillingItem,
    Contract,
    ContractProduct,
    Modality,
    ModalityBalance,
    Order,
    OrderItem,
    Product,
    Supplier,
)
from merenda.services.allocation import D, ModalityWeight, compute_percentages, round_quantity
from merenda.services.balance_allocation import BalanceSnapshot, ModalitySplit, allocate_with_balances
from merenda.services.consumption import (
    lock_balances,
    lock_billing,
    lock_billing_items,
    reverse_locked_item,
    item_key,
)
from merenda.services.errors import (
    DuplicateBillingError,
    InsufficientBalanceError,
    InvalidBillingStateError,
    InvalidOrderStateError,
    NoBillableItemsError,
    OrderNotFoundError,
)
from merenda.services.numbering import next_billing_number

logger = logging.getLogger(__name__)


# ---------- Prévia ----------
@dataclass
class PreviewItem:
    order_item_id: int
    contract_product_id: int
    product_id: int
    product_name: str
    uom: str
    quantity_original: int
    unit_price: Decimal
    value_original: Decimal
    splits: list[ModalitySplit] = field(default_factory=list)


@dataclass
class PreviewContract:
    contract_id: int
    contract_number: str
    supplier_id: int
    supplier_name: str
    items: list[PreviewItem] = field(default_factory=list)
    quantity_total: int = 0
    value_total: Decimal = Decimal("0")


@dataclass
class PreviewSummary:
    total_contracts: int
    total_suppliers: int
    total_modalities: int
    total_items: int
    excluded_items: int
    quantity_total: int
    value_total: Decimal


@dataclass
class BillingPreview:
    order_id: int
    order_number: str
    modalities: list[ModalityWeight]
    contracts: list[PreviewContract]
    alerts: list[str]
    summary: PreviewSummary

    @property
    def can_generate(self) -> bool:
        return bool(self.contracts)

    def required_by_balance(self) -> dict[tuple[int, int, int], int]:
        required: dict[tuple[int, int, int], int] = defaultdict(int)
        for contract in self.contracts:
            for item in contract.items:
                for split in item.splits:
                    required[(contract.contract_id, item.product_id, split.modality_id)] += split.quantity
        return dict(required)


@dataclass
class GeneratedBilling:
    billing: Billing
    preview: BillingPreview


def _ensure_billable(order: Order) -> None:
    if order.status in NON_BILLABLE_ORDER_STATUSES:
        raise InvalidOrderStateError(
            f"Order {order.number} is {order.status.value.lower()} and cannot be billed"
        )


def build_preview(db: Session, *, tenant_id: int, order_id: int) -> BillingPreview:
    order = db.execute(
        select(Order).where(Order.id == order_id).where(Order.tenant_id == tenant_id)
    ).scalar_one_or_none()
    if not order:
        raise OrderNotFoundError(f"Order {order_id} not found")
    _ensure_billable(order)

    modalities = compute_percentages(
        db.execute(
            select(Modality)
            .where(Modality.tenant_id == tenant_id)
            .where(Modality.active.is_(True))
            .order_by(Modality.name, Modality.id)
        )
        .scalars()
        .all()
    )

    rows = db.execute(
        select(OrderItem, ContractProduct, Contract, Supplier, Product)
        .join(ContractProduct, ContractProduct.id == OrderItem.contract_product_id)
        .join(Contract, Contract.id == ContractProduct.contract_id)
        .join(Supplier, Supplier.id == Contract.supplier_id)
        .join(Product, Product.id == OrderItem.product_id)
        .where(OrderItem.order_id == order.id)
        .where(Contract.tenant_id == tenant_id)
        .order_by(Contract.number, Supplier.name, Product.name, OrderItem.id)
    ).all()
    if not rows:
        raise InvalidOrderStateError(f"Order {order.number} has no items")

    # ---------- SALDOS ----------
    cp_ids = sorted({cp.id for _, cp, _, _, _ in rows})
    balance_rows = db.execute(
        select(ModalityBalance, Modality)
        .join(Modality, Modality.id == ModalityBalance.modality_id)
        .where(ModalityBalance.contract_product_id.in_(cp_ids))
        .where(ModalityBalance.active.is_(True))
        .where(Modality.active.is_(True))
        .where(Modality.tenant_id == tenant_id)
        .order_by(Modality.name, Modality.id)
    ).all()

    balances_by_cp: dict[int, list[tuple[ModalityBalance, Modality]]] = defaultdict(list)
    # disponible "courant" : deux lignes sur le même saldo ne le comptent pas deux fois
    remaining: dict[int, int] = {}
    for balance, modality in balance_rows:
        balances_by_cp[balance.contract_product_id].append((balance, modality))
        remaining[balance.id] = int(balance.available_quantity)

    # ---------- RÉPARTITION ----------
    contracts: dict[int, PreviewContract] = {}
    alerts: list[str] = []

    for item, cp, contract, supplier, product in rows:
        label = f"{product.name} (contract {contract.number})"
        quantity = round_quantity(item.quantity)
        if quantity <= 0:
            alerts.append(f"{label}: quantity {item.quantity} rounds to zero")
            continue

        snapshots = [
            BalanceSnapshot(
                balance_id=balance.id,
                modality_id=modality.id,
                name=modality.name,
                financial_code=modality.financial_code,
                repasse=D(modality.repasse),
                initial_quantity=int(balance.initial_quantity),
                available_quantity=remaining[balance.id],
            )
            for balance, modality in balances_by_cp.get(cp.id, [])
        ]
        unit_price = D(item.unit_price)
        allocation = allocate_with_balances(quantity, unit_price, snapshots, label=label)
        if allocation.excluded:
            logger.warning("order=%s item=%s excluded: %s", order.number, item.id, allocation.alert)
            alerts.append(allocation.alert)
            continue

        for split in allocation.splits:
            remaining[split.balance_id] -= split.quantity

        group = contracts.get(contract.id)
        if group is None:
            group = contracts[contract.id] = PreviewContract(
                contract_id=contract.id,
                contract_number=contract.number,
                supplier_id=supplier.id,
                supplier_name=supplier.name,
            )
        value = sum((s.value for s in allocation.splits), Decimal("0"))
        group.items.append(
            PreviewItem(
                order_item_id=item.id,
                contract_product_id=cp.id,
                product_id=product.id,
                product_name=product.name,
                uom=product.uom,
                quantity_original=quantity,
                unit_price=unit_price,
                value_original=value,
                splits=allocation.splits,
            )
        )
        group.quantity_total += quantity
        group.value_total += value

    groups = list(contracts.values())
    summary = PreviewSummary(
        total_contracts=len(groups),
        total_suppliers=len({g.supplier_id for g in groups}),
        total_modalities=len(modalities),
        total_items=sum(len(g.items) for g in groups),
        excluded_items=len(alerts),
        quantity_total=sum(g.quantity_total for g in groups),
        value_total=sum((g.value_total for g in groups), Decimal("0")),
    )
    return BillingPreview(
        order_id=order.id,
        order_number=order.number,
        modalities=modalities,
        contracts=groups,
        alerts=alerts,
        summary=summary,
    )


def _lock_order(db: Session, *, tenant_id: int, order_id: int) -> Order:
    order = db.execute(
        select(Order)
        .where(Order.id == order_id)
        .where(Order.tenant_id == tenant_id)
        .with_for_update()
    ).scalar_one_or_none()
    if not order:
        raise OrderNotFoundError(f"Order {order_id} not found")
    return order


class BillingService:
    def __init__(self, sessions: sessionmaker, settings: Settings | None = None) -> None:
        self._sessions = sessions
        self._settings = settings or get_settings()

    def preview(self, tenant_id: int, order_id: int) -> BillingPreview:
        with self._sessions() as db:
            return build_preview(db, tenant_id=tenant_id, order_id=order_id)

    def generate(
        self,
        tenant_id: int,
        order_id: int,
        *,
        user_id: int | None = None,
        observations: str | None = None,
        billing_date: date | None = None,
    ) -> GeneratedBilling:
        with self._sessions.begin() as db:
            # le verrou du pedido sérialise les générations concurrentes
            order = _lock_order(db, tenant_id=tenant_id, order_id=order_id)
            existing = db.execute(
                select(Billing)
                .where(Billing.order_id == order.id)
                .where(Billing.status != BillingStatus.cancelled)
                .with_for_update()
            ).scalar_one_or_none()
            if existing:
                raise DuplicateBillingError(
                    f"Billing {existing.number} already exists for order {order.number}",
                    billing_id=existing.id,
                )

            preview = build_preview(db, tenant_id=tenant_id, order_id=order.id)
            if not preview.can_generate:
                raise NoBillableItemsError(
                    f"No item of order {order.number} can be billed with the current balances",
                    alerts=preview.alerts,
                )

            # ---------- LOCK THEN VALIDATE ----------
            required = preview.required_by_balance()
            locked = lock_balances(db, required.keys())
            shortfalls = []
            for key, qty in sorted(required.items()):
                balance = locked[key]
                available = int(balance.available_quantity)
                if available < qty:
                    shortfalls.append(
                        {
                            "contract_id": key[0],
                            "product_id": key[1],
                            "modality_id": key[2],
                            "available": available,
                            "required": qty,
                            "shortfall": qty - available,
                        }
                    )
            if shortfalls:
                raise InsufficientBalanceError(
                    f"Balances changed while generating billing for order {order.number}",
                    shortfalls=shortfalls,
                )

            billing_date = billing_date or date.today()
            number = next_billing_number(
                db,
                tenant_id=tenant_id,
                year=billing_date.year,
                prefix=self._settings.BILLING_NUMBER_PREFIX,
                padding=self._settings.BILLING_NUMBER_PADDING,
            )
            billing = Billing(
                tenant_id=tenant_id,
                order_id=order.id,
                number=number,
                billing_date=billing_date,
                status=BillingStatus.generated,
                total_value=preview.summary.value_total,
                observations=observations,
                created_by=user_id,
            )
            for contract in preview.contracts:
                for item in contract.items:
                    for split in item.splits:
                        if split.quantity <= 0:
                            continue
                        billing.items.append(
                            BillingItem(
                                order_item_id=item.order_item_id,
                                modality_id=split.modality_id,
                                contract_id=contract.contract_id,
                                supplier_id=contract.supplier_id,
                                product_id=item.product_id,
                                quantity_original=item.quantity_original,
                                quantity_modality=split.quantity,
                                percentual_modality=split.percentual.quantize(Decimal("0.0001")),
                                unit_price=item.unit_price,
                                total_value=split.value,
                            )
                        )
            db.add(billing)

            # filet : l'index unique partiel sur order_id
            try:
                db.flush()
            except IntegrityError as exc:
                raise DuplicateBillingError(f"Billing already exists for order {order.number}") from exc

            logger.info(
                "billing generated tenant=%s order=%s billing=%s items=%s total=%s excluded=%s",
                tenant_id, order.number, number, len(billing.items), billing.total_value, len(preview.alerts),
            )
            return GeneratedBilling(billing=billing, preview=preview)

    def cancel_billing(self, tenant_id: int, billing_id: int, *, user_id: int | None = None) -> Billing:
        """
        Annulation (suppression logique) : la consommation enregistrée est
        rendue aux saldos avec un mouvement REVERSAL, le numéro reste pris.
        """
        with self._sessions.begin() as db:
            billing = lock_billing(db, tenant_id=tenant_id, billing_id=billing_id)
            if billing.status == BillingStatus.cancelled:
                raise InvalidBillingStateError(f"Billing {billing.number} is already cancelled")

            items = lock_billing_items(db, billing.id)
            registered = [i for i in items if i.consumption_registered]
            balances = lock_balances(db, (item_key(i) for i in registered))
            for item in registered:
                reverse_locked_item(
                    db, billing, item, balances[item_key(item)], user_id=user_id, log_reversal=True
                )

            billing.status = BillingStatus.cancelled
            logger.info(
                "billing cancelled tenant=%s billing=%s reversed_items=%s",
                tenant_id, billing.number, len(registered),
            )
            return billing
