"""add stock reservations

Revision ID: 20260305_0002
Revises: 20260301_0001
Create Date: 2026-03-05 10:30:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20260305_0002"
down_revision: Union[str, None] = "20260301_0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _index_exists(inspector: sa.Inspector, table_name: str, index_name: str) -> bool:
    return index_name in {index["name"] for index in inspector.get_indexes(table_name)}


INDEXES: list[tuple[str, str, list[str]]] = [
    ("stock_reservations", "ix_stock_reservations_product_id", ["product_id"]),
    ("stock_reservations", "ix_stock_reservations_warehouse_id", ["warehouse_id"]),
    ("stock_reservations", "ix_stock_reservations_reference_id", ["reference_id"]),
    (
        "stock_reservations",
        "ix_stock_reservations_status_product_warehouse",
        ["status", "product_id", "warehouse_id"],
    ),
    ("stock_reservation_batches", "ix_stock_reservation_batches_reservation_id", ["reservation_id"]),
    ("stock_reservation_batches", "ix_stock_reservation_batches_purchase_batch_id", ["purchase_batch_id"]),
]


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not _table_exists(inspector, "stock_reservations"):
        op.create_table(
            "stock_reservations",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("code", sa.String(length=40), nullable=False),
            sa.Column("product_id", sa.String(length=36), nullable=False),
            sa.Column("warehouse_id", sa.String(length=36), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="held"),
            sa.Column("reference_id", sa.String(length=36), nullable=True),
            sa.Column("note", sa.String(length=255), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint("quantity > 0", name="ck_stock_reservations_quantity_positive"),
            sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
            sa.ForeignKeyConstraint(["warehouse_id"], ["warehouses.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
        )

    if not _table_exists(inspector, "stock_reservation_batches"):
        op.create_table(
            "stock_reservation_batches",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("reservation_id", sa.String(length=36), nullable=False),
            sa.Column("purchase_batch_id", sa.String(length=36), nullable=False),
            sa.Column("sequence", sa.Integer(), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column("unit_cost", sa.Numeric(12, 2), nullable=False),
            sa.CheckConstraint("quantity > 0", name="ck_stock_reservation_batches_quantity_positive"),
            sa.ForeignKeyConstraint(["reservation_id"], ["stock_reservations.id"]),
            sa.ForeignKeyConstraint(["purchase_batch_id"], ["purchase_batches.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("reservation_id", "sequence", name="uq_stock_reservation_batches_sequence"),
        )

    inspector = sa.inspect(bind)
    for table_name, index_name, columns in INDEXES:
        if _table_exists(inspector, table_name) and not _index_exists(inspector, table_name, index_name):
            op.create_index(index_name, table_name, columns, unique=False)


def downgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    for table_name, index_name, _ in reversed(INDEXES):
        if _table_exists(inspector, table_name) and _index_exists(inspector, table_name, index_name):
            op.drop_index(index_name, table_name=table_name)

    for table_name in ("stock_reservation_batches", "stock_reservations"):
        if _table_exists(inspector, table_name):
            op.drop_table(table_name)
