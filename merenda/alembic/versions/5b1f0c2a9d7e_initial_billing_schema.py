"""initial billing schema

Revision ID: 5b1f0c2a9d7e
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "5b1f0c2a9d7e"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# SQLAlchemy Enum stocke le NOM des membres
ORDER_STATUS = sa.Enum("draft", "pending", "approved", "delivered", "cancelled", name="order_status")
BILLING_STATUS = sa.Enum("generated", "consumed", "cancelled", name="billing_status")
MOVEMENT_TYPE = sa.Enum("consume", "reversal", name="movement_type")

PK = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    # ---------- MASTER DATA ----------
    op.create_table(
        "suppliers",
        sa.Column("id", PK, primary_key=True),
        sa.Column("tenant_id", sa.BigInteger(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("document", sa.String(32)),
        sa.UniqueConstraint("tenant_id", "name", name="uq_supplier_tenant_name"),
    )
    op.create_index("ix_suppliers_tenant_id", "suppliers", ["tenant_id"])

    op.create_table(
        "products",
        sa.Column("id", PK, primary_key=True),
        sa.Column("tenant_id", sa.BigInteger(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("uom", sa.String(32), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
    )
    op.create_index("ix_products_tenant_id", "products", ["tenant_id"])

    op.create_table(
        "modalities",
        sa.Column("id", PK, primary_key=True),
        sa.Column("tenant_id", sa.BigInteger(), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("financial_code", sa.String(32)),
        sa.Column("repasse", sa.Numeric(14, 2), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.UniqueConstraint("tenant_id", "name", name="uq_modality_tenant_name"),
        sa.CheckConstraint("repasse >= 0", name="ck_modality_repasse_nonneg"),
    )
    op.create_index("ix_modalities_tenant_id", "modalities", ["tenant_id"])

    # ---------- CONTRACTS ----------
    op.create_table(
        "contracts",
        sa.Column("id", PK, primary_key=True),
        sa.Column("tenant_id", sa.BigInteger(), nullable=False),
        sa.Column("number", sa.String(64), nullable=False),
        sa.Column("supplier_id", sa.BigInteger(), sa.ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("start_date", sa.Date()),
        sa.Column("end_date", sa.Date()),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.UniqueConstraint("tenant_id", "number", name="uq_contract_tenant_number"),
    )
    op.create_index("ix_contracts_tenant_id", "contracts", ["tenant_id"])

    op.create_table(
        "contract_products",
        sa.Column("id", PK, primary_key=True),
        sa.Column("contract_id", sa.BigInteger(), sa.ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("contracted_quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Numeric(14, 2), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.UniqueConstraint("contract_id", "product_id", name="uq_contract_product"),
        sa.CheckConstraint("contracted_quantity >= 0", name="ck_contract_product_qty_nonneg"),
        sa.CheckConstraint("unit_price >= 0", name="ck_contract_product_price_nonneg"),
    )

    op.create_table(
        "modality_balances",
        sa.Column("id", PK, primary_key=True),
        sa.Column(
            "contract_product_id",
            sa.BigInteger(),
            sa.ForeignKey("contract_products.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("modality_id", sa.BigInteger(), sa.ForeignKey("modalities.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("initial_quantity", sa.Integer(), nullable=False),
        sa.Column("consumed_quantity", sa.Integer(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("contract_product_id", "modality_id", name="uq_balance_contract_product_modality"),
        sa.CheckConstraint("initial_quantity >= 0", name="ck_balance_initial_nonneg"),
        sa.CheckConstraint("consumed_quantity >= 0", name="ck_balance_consumed_nonneg"),
        sa.CheckConstraint("consumed_quantity <= initial_quantity", name="ck_balance_consumed_le_initial"),
    )
    op.create_index("ix_modality_balances_contract_product_id", "modality_balances", ["contract_product_id"])

    # ---------- ORDERS ----------
    op.create_table(
        "orders",
        sa.Column("id", PK, primary_key=True),
        sa.Column("tenant_id", sa.BigInteger(), nullable=False),
        sa.Column("number", sa.String(64), nullable=False),
        sa.Column("status", ORDER_STATUS, nullable=False),
        sa.Column("total_value", sa.Numeric(14, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("tenant_id", "number", name="uq_order_tenant_number"),
    )
    op.create_index("ix_orders_tenant_id", "orders", ["tenant_id"])

    op.create_table(
        "order_items",
        sa.Column("id", PK, primary_key=True),
        sa.Column("order_id", sa.BigInteger(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "contract_product_id",
            sa.BigInteger(),
            sa.ForeignKey("contract_products.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("quantity", sa.Numeric(14, 3), nullable=False),
        sa.Column("unit_price", sa.Numeric(14, 2), nullable=False),
        sa.Column("total_value", sa.Numeric(14, 2), nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck_order_item_qty_pos"),
        sa.CheckConstraint("unit_price >= 0", name="ck_order_item_unit_price_nonneg"),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])

    # ---------- BILLING ----------
    op.create_table(
        "billing_sequences",
        sa.Column("id", PK, primary_key=True),
        sa.Column("tenant_id", sa.BigInteger(), nullable=False),
        sa.Column("prefix", sa.String(10), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("last_number", sa.Integer(), nullable=False),
        sa.UniqueConstraint("tenant_id", "prefix", "year", name="uq_billing_sequence_tenant_prefix_year"),
    )

    op.create_table(
        "billings",
        sa.Column("id", PK, primary_key=True),
        sa.Column("tenant_id", sa.BigInteger(), nullable=False),
        sa.Column("order_id", sa.BigInteger(), sa.ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("number", sa.String(32), nullable=False),
        sa.Column("billing_date", sa.Date(), nullable=False),
        sa.Column("status", BILLING_STATUS, nullable=False),
        sa.Column("total_value", sa.Numeric(14, 2), nullable=False),
        sa.Column("observations", sa.Text()),
        sa.Column("created_by", sa.BigInteger()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("tenant_id", "number", name="uq_billing_tenant_number"),
    )
    op.create_index("ix_billings_tenant_id", "billings", ["tenant_id"])
    op.create_index("ix_billings_order_id", "billings", ["order_id"])
    op.create_index(
        "uq_billing_live_order",
        "billings",
        ["order_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'cancelled'"),
        sqlite_where=sa.text("status <> 'cancelled'"),
    )

    op.create_table(
        "billing_items",
        sa.Column("id", PK, primary_key=True),
        sa.Column("billing_id", sa.BigInteger(), sa.ForeignKey("billings.id", ondelete="CASCADE"), nullable=False),
        sa.Column("order_item_id", sa.BigInteger(), sa.ForeignKey("order_items.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("modality_id", sa.BigInteger(), sa.ForeignKey("modalities.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("contract_id", sa.BigInteger(), sa.ForeignKey("contracts.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("supplier_id", sa.BigInteger(), sa.ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("quantity_original", sa.Integer(), nullable=False),
        sa.Column("quantity_modality", sa.Integer(), nullable=False),
        sa.Column("percentual_modality", sa.Numeric(9, 4), nullable=False),
        sa.Column("unit_price", sa.Numeric(14, 2), nullable=False),
        sa.Column("total_value", sa.Numeric(14, 2), nullable=False),
        sa.Column("consumption_registered", sa.Boolean(), nullable=False),
        sa.Column("consumption_registered_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("billing_id", "order_item_id", "modality_id", name="uq_billing_item_order_item_modality"),
        sa.CheckConstraint("quantity_modality > 0", name="ck_billing_item_qty_pos"),
    )
    op.create_index("ix_billing_items_billing_id", "billing_items", ["billing_id"])
    op.create_index("ix_billing_items_contract_modality", "billing_items", ["billing_id", "contract_id", "modality_id"])

    # ---------- CONSUMPTION LEDGER ----------
    op.create_table(
        "consumption_movements",
        sa.Column("id", PK, primary_key=True),
        sa.Column(
            "modality_balance_id",
            sa.BigInteger(),
            sa.ForeignKey("modality_balances.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("billing_item_id", sa.BigInteger(), sa.ForeignKey("billing_items.id", ondelete="SET NULL")),
        sa.Column("movement_type", MOVEMENT_TYPE, nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("note", sa.String(255)),
        sa.Column("user_id", sa.BigInteger()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("quantity <> 0", name="ck_consumption_movement_qty_nonzero"),
    )
    op.create_index("ix_consumption_movements_modality_balance_id", "consumption_movements", ["modality_balance_id"])
    op.create_index("ix_consumption_movements_billing_item_id", "consumption_movements", ["billing_item_id"])
    op.create_index(
        "ix_consumption_movements_balance_time",
        "consumption_movements",
        ["modality_balance_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_table("consumption_movements")
    op.drop_table("billing_items")
    op.drop_index("uq_billing_live_order", table_name="billings")
    op.drop_table("billings")
    op.drop_table("billing_sequences")
    op.drop_table("order_items")
    op.drop_table("orders")
    op.drop_table("modality_balances")
    op.drop_table("contract_products")
    op.drop_table("contracts")
    op.drop_table("modalities")
    op.drop_table("products")
    op.drop_table("suppliers")

    bind = op.get_bind()
    MOVEMENT_TYPE.drop(bind, checkfirst=True)
    BILLING_STATUS.drop(bind, checkfirst=True)
    ORDER_STATUS.drop(bind, checkfirst=True)
