import os
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from merenda.app.db.base import Base
from merenda.app.db.models import models_v1  # noqa: F401  (import for side effects)
from merenda.app.db.models.core_types import OrderStatus
from merenda.app.db.models.models_v1 import (
    ConsumptionMovement,
    Contract,
    ContractProduct,
    Modality,
    ModalityBalance,
    Order,
    OrderItem,
    Product,
    Supplier,
)
from merenda.app.db.session import make_engine, make_sessionmaker

TENANT_ID = 1


@pytest.fixture(scope="function")
def engine(tmp_path):
    """
    Base neuve par test.

    Les services committent eux-mêmes (sessionmaker.begin()), le pattern
    SAVEPOINT + rollback ne s'applique donc pas : on recrée le schéma.
    TEST_DATABASE_URL=postgresql+psycopg://... pour tourner sur Postgres.
    """
    url = os.getenv("TEST_DATABASE_URL") or f"sqlite:///{tmp_path / 'merenda-test.db'}"
    eng = make_engine(url)
    Base.metadata.drop_all(bind=eng)
    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        Base.metadata.drop_all(bind=eng)
        eng.dispose()


@pytest.fixture(scope="function")
def sessions(engine) -> sessionmaker:
    return make_sessionmaker(engine)


class Catalog:
    """Petit builder de données de test (chaque appel committe)."""

    def __init__(self, sessions: sessionmaker, tenant_id: int = TENANT_ID) -> None:
        self.sessions = sessions
        self.tenant_id = tenant_id
        self._order_seq = 0

    def modality(self, name: str, repasse, *, active: bool = True) -> int:
        with self.sessions.begin() as db:
            m = Modality(
                tenant_id=self.tenant_id,
                name=name,
                financial_code=name[:8].upper(),
                repasse=Decimal(str(repasse)),
                active=active,
            )
            db.add(m)
            db.flush()
            return m.id

    def contract_product(
        self,
        *,
        contract: str = "CT-001",
        supplier: str = "Fornecedor A",
        product: str = "Arroz",
        unit_price="2.00",
    ) -> int:
        with self.sessions.begin() as db:
            sup = db.scalar(select(Supplier).where(Supplier.tenant_id == self.tenant_id, Supplier.name == supplier))
            if not sup:
                sup = Supplier(tenant_id=self.tenant_id, name=supplier)
                db.add(sup)
                db.flush()

            ct = db.scalar(select(Contract).where(Contract.tenant_id == self.tenant_id, Contract.number == contract))
            if not ct:
                ct = Contract(tenant_id=self.tenant_id, number=contract, supplier_id=sup.id, active=True)
                db.add(ct)
                db.flush()

            prod = db.scalar(select(Product).where(Product.tenant_id == self.tenant_id, Product.name == product))
            if not prod:
                prod = Product(tenant_id=self.tenant_id, name=product, uom="kg", active=True)
                db.add(prod)
                db.flush()

            cp = ContractProduct(
                contract_id=ct.id,
                product_id=prod.id,
                contracted_quantity=1000,
                unit_price=Decimal(str(unit_price)),
                active=True,
            )
            db.add(cp)
            db.flush()
            return cp.id

    def balance(self, contract_product_id: int, modality_id: int, initial: int, consumed: int = 0) -> int:
        with self.sessions.begin() as db:
            b = ModalityBalance(
                contract_product_id=contract_product_id,
                modality_id=modality_id,
                initial_quantity=initial,
                consumed_quantity=consumed,
                active=True,
            )
            db.add(b)
            db.flush()
            return b.id

    def order(self, items, *, status: OrderStatus = OrderStatus.pending) -> int:
        """items : [(contract_product_id, quantity), ...]"""
        self._order_seq += 1
        with self.sessions.begin() as db:
            order = Order(tenant_id=self.tenant_id, number=f"PED-{self._order_seq:04d}", status=status)
            db.add(order)
            db.flush()
            total = Decimal("0")
            for cp_id, qty in items:
                cp = db.get(ContractProduct, cp_id)
                qty = Decimal(str(qty))
                db.add(
                    OrderItem(
                        order_id=order.id,
                        contract_product_id=cp.id,
                        product_id=cp.product_id,
                        quantity=qty,
                        unit_price=cp.unit_price,
                        total_value=qty * cp.unit_price,
                    )
                )
                total += qty * cp.unit_price
            order.total_value = total
            return order.id

    # ---------- lecture ----------
    def balance_state(self, balance_id: int) -> tuple[int, int]:
        with self.sessions() as db:
            b = db.get(ModalityBalance, balance_id)
            return b.initial_quantity, b.consumed_quantity

    def movements(self, balance_id: int) -> list[ConsumptionMovement]:
        with self.sessions() as db:
            return list(
                db.execute(
                    select(ConsumptionMovement)
                    .where(ConsumptionMovement.modality_balance_id == balance_id)
                    .order_by(ConsumptionMovement.id)
                )
                .scalars()
                .all()
            )


@pytest.fixture
def catalog(sessions) -> Catalog:
    return Catalog(sessions)


@pytest.fixture
def two_modalities(catalog):
    """
    A (repasse 600) / B (repasse 400) -> 60 % / 40 %
    un produit, saldo 100 par modalidade.
    """
    a = catalog.modality("A", "600")
    b = catalog.modality("B", "400")
    cp = catalog.contract_product()
    ba = catalog.balance(cp, a, 100)
    bb = catalog.balance(cp, b, 100)
    return {"modalities": (a, b), "cp": cp, "balances": (ba, bb)}
