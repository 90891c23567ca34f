from __future__ import annotations

from datetime import datetime, date
from decimal import Decimal

from sqlalchemy import (
    String,
    Integer,
    BigInteger,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Numeric,
    Text,
    Enum,
    UniqueConstraint,
    Index,
    CheckConstraint,
    text,
)
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import Mapped, mapped_column, relationship

from merenda.app.db.base import Base, BigIntPK
from merenda.app.db.models.core_types import (
    BillingStatus,
    MovementType,
    OrderStatus,
)

# ---------- MASTER DATA ----------
class Supplier(Base):
    __tablename__ = "suppliers"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    document: Mapped[str | None] = mapped_column(String(32))  # CNPJ optionnel

    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_supplier_tenant_name"),)


class Product(Base):
    __tablename__ = "products"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    uom: Mapped[str] = mapped_column(String(32), default="unit", nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Modality(Base):
    __tablename__ = "modalities"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    financial_code: Mapped[str | None] = mapped_column(String(32))
    # valor de repasse : poids de répartition
    repasse: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_modality_tenant_name"),
        CheckConstraint("repasse >= 0", name="ck_modality_repasse_nonneg"),
    )


# ---------- CONTRACTS ----------
class Contract(Base):
    __tablename__ = "contracts"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    number: Mapped[str] = mapped_column(String(64), nullable=False)
    supplier_id: Mapped[int] = mapped_column(ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=False)
    start_date: Mapped[date | None] = mapped_column(Date)
    end_date: Mapped[date | None] = mapped_column(Date)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    supplier: Mapped[Supplier] = relationship()

    __table_args__ = (UniqueConstraint("tenant_id", "number", name="uq_contract_tenant_number"),)


class ContractProduct(Base):
    __tablename__ = "contract_products"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    contract_id: Mapped[int] = mapped_column(ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    contracted_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    contract: Mapped[Contract] = relationship()
    product: Mapped[Product] = relationship()

    __table_args__ = (
        UniqueConstraint("contract_id", "product_id", name="uq_contract_product"),
        CheckConstraint("contracted_quantity >= 0", name="ck_contract_product_qty_nonneg"),
        CheckConstraint("unit_price >= 0", name="ck_contract_product_price_nonneg"),
    )


class ModalityBalance(Base):
    """
    Saldo par (contract_product × modality).

    consumed_quantity ne bouge QUE via le ledger de consommation,
    toujours sous verrou FOR UPDATE.
    """

    __tablename__ = "modality_balances"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    contract_product_id: Mapped[int] = mapped_column(
        ForeignKey("contract_products.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    modality_id: Mapped[int] = mapped_column(ForeignKey("modalities.id", ondelete="RESTRICT"), nullable=False)
    initial_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    consumed_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    contract_product: Mapped[ContractProduct] = relationship()
    modality: Mapped[Modality] = relationship()

    @hybrid_property
    def available_quantity(self) -> int:
        return self.initial_quantity - self.consumed_quantity

    __table_args__ = (
        UniqueConstraint("contract_product_id", "modality_id", name="uq_balance_contract_product_modality"),
        CheckConstraint("initial_quantity >= 0", name="ck_balance_initial_nonneg"),
        CheckConstraint("consumed_quantity >= 0", name="ck_balance_consumed_nonneg"),
        CheckConstraint("consumed_quantity <= initial_quantity", name="ck_balance_consumed_le_initial"),
    )


# ---------- ORDERS ----------
class Order(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    number: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[OrderStatus] = mapped_column(
        Enum(OrderStatus, name="order_status"),
        default=OrderStatus.draft,
        nullable=False,
    )
    total_value: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    items: Mapped[list["OrderItem"]] = relationship(back_populates="order", cascade="all, delete-orphan")

    __table_args__ = (UniqueConstraint("tenant_id", "number", name="uq_order_tenant_number"),)


class OrderItem(Base):
    __tablename__ = "order_items"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    contract_product_id: Mapped[int] = mapped_column(
        ForeignKey("contract_products.id", ondelete="RESTRICT"),
        nullable=False,
    )
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    # fractionnaire possible : arrondi une seule fois au moment de la répartition
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    total_value: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    order: Mapped[Order] = relationship(back_populates="items")
    contract_product: Mapped[ContractProduct] = relationship()
    product: Mapped[Product] = relationship()

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_item_qty_pos"),
        CheckConstraint("unit_price >= 0", name="ck_order_item_unit_price_nonneg"),
    )


# ---------- BILLING ----------
class BillingSequence(Base):
    """Dernier numéro émis par (tenant, préfixe, année). Jamais remis à zéro."""

    __tablename__ = "billing_sequences"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    prefix: Mapped[str] = mapped_column(String(10), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    last_number: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (UniqueConstraint("tenant_id", "prefix", "year", name="uq_billing_sequence_tenant_prefix_year"),)


class Billing(Base):
    __tablename__ = "billings"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False, index=True)
    number: Mapped[str] = mapped_column(String(32), nullable=False)
    billing_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[BillingStatus] = mapped_column(
        Enum(BillingStatus, name="billing_status"),
        default=BillingStatus.generated,
        nullable=False,
    )
    total_value: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0, nullable=False)
    observations: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    order: Mapped[Order] = relationship()
    items: Mapped[list["BillingItem"]] = relationship(
        back_populates="billing",
        cascade="all, delete-orphan",
        order_by="BillingItem.id",
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "number", name="uq_billing_tenant_number"),
        # Un seul faturamento vivant par pedido (les annulés restent pour l'audit)
        Index(
            "uq_billing_live_order",
            "order_id",
            unique=True,
            postgresql_where=text("status <> 'cancelled'"),
            sqlite_where=text("status <> 'cancelled'"),
        ),
    )


class BillingItem(Base):
    __tablename__ = "billing_items"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    billing_id: Mapped[int] = mapped_column(ForeignKey("billings.id", ondelete="CASCADE"), nullable=False, index=True)
    order_item_id: Mapped[int] = mapped_column(ForeignKey("order_items.id", ondelete="RESTRICT"), nullable=False)
    modality_id: Mapped[int] = mapped_column(ForeignKey("modalities.id", ondelete="RESTRICT"), nullable=False)
    contract_id: Mapped[int] = mapped_column(ForeignKey("contracts.id", ondelete="RESTRICT"), nullable=False)
    supplier_id: Mapped[int] = mapped_column(ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)

    quantity_original: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_modality: Mapped[int] = mapped_column(Integer, nullable=False)
    percentual_modality: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    total_value: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    consumption_registered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    consumption_registered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    billing: Mapped[Billing] = relationship(back_populates="items")
    modality: Mapped[Modality] = relationship()
    product: Mapped[Product] = relationship()

    __table_args__ = (
        UniqueConstraint("billing_id", "order_item_id", "modality_id", name="uq_billing_item_order_item_modality"),
        CheckConstraint("quantity_modality > 0", name="ck_billing_item_qty_pos"),
        Index("ix_billing_items_contract_modality", "billing_id", "contract_id", "modality_id"),
    )


# ---------- CONSUMPTION LEDGER ----------
class ConsumptionMovement(Base):
    __tablename__ = "consumption_movements"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    modality_balance_id: Mapped[int] = mapped_column(
        ForeignKey("modality_balances.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    # lien structurel vers l'item facturé (remplace la recherche par texte)
    billing_item_id: Mapped[int | None] = mapped_column(
        ForeignKey("billing_items.id", ondelete="SET NULL"),
        index=True,
    )
    movement_type: Mapped[MovementType] = mapped_column(Enum(MovementType, name="movement_type"), nullable=False)
    # signé : CONSUME > 0, REVERSAL < 0
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    note: Mapped[str | None] = mapped_column(String(255))
    user_id: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("quantity <> 0", name="ck_consumption_movement_qty_nonzero"),
        Index("ix_consumption_movements_balance_time", "modality_balance_id", "created_at"),
    )
