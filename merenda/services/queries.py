"""Lectures sur les faturamentos (liste paginée, détail, résumé par contrat)."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import selectinload, sessionmaker

from merenda.app.db.models.core_types import BillingStatus
from merenda.app.db.models.models_v1 import (
    Billing,
    BillingItem,
    Contract,
    Modality,
    Order,
    Product,
    Supplier,
)
from merenda.services.errors import BillingNotFoundError, OrderNotFoundError


@dataclass
class BillingListRow:
    id: int
    number: str
    order_id: int
    order_number: str
    billing_date: date
    status: BillingStatus
    total_value: Decimal
    items_count: int


@dataclass
class BillingPage:
    rows: list[BillingListRow]
    total: int
    page: int
    limit: int


@dataclass
class ModalityTotals:
    modality_id: int
    modality_name: str
    modality_financial_code: str | None
    quantity_total: int = 0
    value_total: Decimal = Decimal("0")
    items_count: int = 0
    registered_count: int = 0


@dataclass
class ContractTotals:
    contract_id: int
    contract_number: str
    supplier_id: int
    supplier_name: str
    modalities: list[ModalityTotals] = field(default_factory=list)
    quantity_total: int = 0
    value_total: Decimal = Decimal("0")


@dataclass
class BillingSummary:
    billing_id: int
    number: str
    status: BillingStatus
    contracts: list[ContractTotals]
    quantity_total: int
    value_total: Decimal


class BillingQueries:
    def __init__(self, sessions: sessionmaker) -> None:
        self._sessions = sessions

    def list_billings(
        self,
        tenant_id: int,
        *,
        order_id: int | None = None,
        status: BillingStatus | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> BillingPage:
        page = max(1, page)
        limit = max(1, min(limit, 200))

        filters = [Billing.tenant_id == tenant_id]
        if order_id is not None:
            filters.append(Billing.order_id == order_id)
        if status is not None:
            filters.append(Billing.status == status)
        if date_from is not None:
            filters.append(Billing.billing_date >= date_from)
        if date_to is not None:
            filters.append(Billing.billing_date <= date_to)

        items_count = (
            select(BillingItem.billing_id, func.count(BillingItem.id).label("n"))
            .group_by(BillingItem.billing_id)
            .subquery()
        )

        with self._sessions() as db:
            total = db.execute(select(func.count(Billing.id)).where(*filters)).scalar_one()
            rows = db.execute(
                select(Billing, Order.number, func.coalesce(items_count.c.n, 0))
                .join(Order, Order.id == Billing.order_id)
                .outerjoin(items_count, items_count.c.billing_id == Billing.id)
                .where(*filters)
                .order_by(Billing.billing_date.desc(), Billing.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()

        return BillingPage(
            rows=[
                BillingListRow(
                    id=b.id,
                    number=b.number,
                    order_id=b.order_id,
                    order_number=order_number,
                    billing_date=b.billing_date,
                    status=b.status,
                    total_value=b.total_value,
                    items_count=int(n),
                )
                for b, order_number, n in rows
            ],
            total=int(total),
            page=page,
            limit=limit,
        )

    def get_billing(self, tenant_id: int, billing_id: int) -> Billing:
        with self._sessions() as db:
            billing = db.execute(
                select(Billing)
                .options(
                    selectinload(Billing.items).selectinload(BillingItem.modality),
                    selectinload(Billing.items).selectinload(BillingItem.product),
                    selectinload(Billing.order),
                )
                .where(Billing.id == billing_id)
                .where(Billing.tenant_id == tenant_id)
            ).scalar_one_or_none()
            if not billing:
                raise BillingNotFoundError(f"Billing {billing_id} not found")
            return billing

    def billings_for_order(self, tenant_id: int, order_id: int) -> list[Billing]:
        """Tous les faturamentos d'un pedido, annulés compris, du plus récent au plus ancien."""
        with self._sessions() as db:
            found = db.execute(
                select(Order.id).where(Order.id == order_id).where(Order.tenant_id == tenant_id)
            ).scalar_one_or_none()
            if found is None:
                raise OrderNotFoundError(f"Order {order_id} not found")
            return list(
                db.execute(
                    select(Billing)
                    .where(Billing.order_id == order_id)
                    .where(Billing.tenant_id == tenant_id)
                    .order_by(Billing.created_at.desc(), Billing.id.desc())
                )
                .scalars()
                .all()
            )

    def billing_summary(self, tenant_id: int, billing_id: int) -> BillingSummary:
        with self._sessions() as db:
            billing = db.execute(
                select(Billing).where(Billing.id == billing_id).where(Billing.tenant_id == tenant_id)
            ).scalar_one_or_none()
            if not billing:
                raise BillingNotFoundError(f"Billing {billing_id} not found")

            rows = db.execute(
                select(BillingItem, Contract, Supplier, Modality)
                .join(Contract, Contract.id == BillingItem.contract_id)
                .join(Supplier, Supplier.id == BillingItem.supplier_id)
                .join(Modality, Modality.id == BillingItem.modality_id)
                .join(Product, Product.id == BillingItem.product_id)
                .where(BillingItem.billing_id == billing.id)
                .order_by(Contract.number, Modality.name, Modality.id, Product.name, BillingItem.id)
            ).all()

        contracts: dict[int, ContractTotals] = {}
        by_modality: dict[int, dict[int, ModalityTotals]] = defaultdict(dict)
        for item, contract, supplier, modality in rows:
            group = contracts.get(contract.id)
            if group is None:
                group = contracts[contract.id] = ContractTotals(
                    contract_id=contract.id,
                    contract_number=contract.number,
                    supplier_id=supplier.id,
                    supplier_name=supplier.name,
                )
            totals = by_modality[contract.id].get(modality.id)
            if totals is None:
                totals = by_modality[contract.id][modality.id] = ModalityTotals(
                    modality_id=modality.id,
                    modality_name=modality.name,
                    modality_financial_code=modality.financial_code,
                )
                group.modalities.append(totals)

            totals.quantity_total += item.quantity_modality
            totals.value_total += item.total_value
            totals.items_count += 1
            if item.consumption_registered:
                totals.registered_count += 1
            group.quantity_total += item.quantity_modality
            group.value_total += item.total_value

        groups = list(contracts.values())
        return BillingSummary(
            billing_id=billing.id,
            number=billing.number,
            status=billing.status,
            contracts=groups,
            quantity_total=sum(g.quantity_total for g in groups),
            value_total=sum((g.value_total for g in groups), Decimal("0")),
        )
