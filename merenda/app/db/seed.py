from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from merenda.app.db.session import SessionLocal
from merenda.app.db.models.models_v1 import (
    Contract,
    ContractProduct,
    Modality,
    ModalityBalance,
    Order,
    OrderItem,
    Product,
    Supplier,
)
from merenda.app.db.models.core_types import OrderStatus


@dataclass
class DemoData:
    tenant_id: int
    order_id: int
    contract_id: int
    modality_ids: list[int]


# repasse 500 / 300 / 200 -> 50 % / 30 % / 20 %
DEMO_MODALITIES = [
    ("Ensino Fundamental", "EF", Decimal("500.00")),
    ("Creche", "CR", Decimal("300.00")),
    ("EJA", "EJA", Decimal("200.00")),
]

DEMO_PRODUCTS = [
    ("Arroz tipo 1", "kg", Decimal("5.50"), Decimal("7")),
    ("Feijão carioca", "kg", Decimal("8.90"), Decimal("10")),
]


def seed_demo(db: Session, *, tenant_id: int = 1, balance_per_modality: int = 100) -> DemoData:
    """Idempotent : relancer ne duplique rien."""
    modalities = []
    for name, code, repasse in DEMO_MODALITIES:
        m = db.scalar(select(Modality).where(Modality.tenant_id == tenant_id).where(Modality.name == name))
        if not m:
            m = Modality(tenant_id=tenant_id, name=name, financial_code=code, repasse=repasse, active=True)
            db.add(m)
        modalities.append(m)

    supplier = db.scalar(
        select(Supplier).where(Supplier.tenant_id == tenant_id).where(Supplier.name == "Cooperativa Agro Familiar")
    )
    if not supplier:
        supplier = Supplier(tenant_id=tenant_id, name="Cooperativa Agro Familiar", document="12345678000190")
        db.add(supplier)
    db.flush()

    contract = db.scalar(select(Contract).where(Contract.tenant_id == tenant_id).where(Contract.number == "CT-2026/001"))
    if not contract:
        contract = Contract(
            tenant_id=tenant_id,
            number="CT-2026/001",
            supplier_id=supplier.id,
            start_date=date(2026, 1, 1),
            end_date=date(2026, 12, 31),
            active=True,
        )
        db.add(contract)
        db.flush()

    order = db.scalar(select(Order).where(Order.tenant_id == tenant_id).where(Order.number == "PED-2026/0001"))
    create_order = order is None
    if create_order:
        order = Order(tenant_id=tenant_id, number="PED-2026/0001", status=OrderStatus.pending)
        db.add(order)
        db.flush()

    order_total = Decimal("0")
    for name, uom, price, qty in DEMO_PRODUCTS:
        product = db.scalar(select(Product).where(Product.tenant_id == tenant_id).where(Product.name == name))
        if not product:
            product = Product(tenant_id=tenant_id, name=name, uom=uom, active=True)
            db.add(product)
            db.flush()

        cp = db.scalar(
            select(ContractProduct)
            .where(ContractProduct.contract_id == contract.id)
            .where(ContractProduct.product_id == product.id)
        )
        if not cp:
            cp = ContractProduct(
                contract_id=contract.id,
                product_id=product.id,
                contracted_quantity=balance_per_modality * len(modalities),
                unit_price=price,
                active=True,
            )
            db.add(cp)
            db.flush()

        for m in modalities:
            balance = db.scalar(
                select(ModalityBalance)
                .where(ModalityBalance.contract_product_id == cp.id)
                .where(ModalityBalance.modality_id == m.id)
            )
            if not balance:
                db.add(
                    ModalityBalance(
                        contract_product_id=cp.id,
                        modality_id=m.id,
                        initial_quantity=balance_per_modality,
                        consumed_quantity=0,
                        active=True,
                    )
                )

        if create_order:
            db.add(
                OrderItem(
                    order_id=order.id,
                    contract_product_id=cp.id,
                    product_id=product.id,
                    quantity=qty,
                    unit_price=price,
                    total_value=qty * price,
                )
            )
            order_total += qty * price

    if create_order:
        order.total_value = order_total
    db.flush()

    return DemoData(
        tenant_id=tenant_id,
        order_id=order.id,
        contract_id=contract.id,
        modality_ids=[m.id for m in modalities],
    )


def run_seed():
    db = SessionLocal()
    try:
        data = seed_demo(db)
        db.commit()
        print(f"SEED OK: tenant={data.tenant_id} order={data.order_id} contract={data.contract_id}")
    finally:
        db.close()


if __name__ == "__main__":
    run_seed()
