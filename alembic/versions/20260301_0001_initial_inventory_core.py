"""initial inventory core

Revision ID: 20260301_0001
Revises:
Create Date: 2026-03-01 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20260301_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _index_exists(inspector: sa.Inspector, table_name: str, index_name: str) -> bool:
    return index_name in {index["name"] for index in inspector.get_indexes(table_name)}


def _id_column() -> sa.Column:
    return sa.Column("id", sa.String(length=36), nullable=False)


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def _money(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.Numeric(12, 2), nullable=nullable)


def _flag(name: str, default: str) -> sa.Column:
    return sa.Column(name, sa.Boolean(), nullable=False, server_default=default)


# (table, index name, columns, unique); created only when missing.
INDEXES: list[tuple[str, str, list[str], bool]] = [
    ("categories", "ix_categories_parent_id", ["parent_id"], False),
    ("products", "ix_products_category_id", ["category_id"], False),
    ("warehouses", "ix_warehouses_active_online_main", ["is_active", "visible_online", "is_main"], False),
    ("product_prices", "ix_product_prices_product_id", ["product_id"], False),
    ("product_prices", "ix_product_prices_price_list_id", ["price_list_id"], False),
    ("product_prices", "ix_product_prices_product_list", ["product_id", "price_list_id"], False),
    ("purchases", "ix_purchases_warehouse_id", ["warehouse_id"], False),
    ("purchase_details", "ix_purchase_details_purchase_id", ["purchase_id"], False),
    ("purchase_details", "ix_purchase_details_product_id", ["product_id"], False),
    ("purchase_batches", "ix_purchase_batches_purchase_id", ["purchase_id"], False),
    ("purchase_batches", "ix_purchase_batches_product_id", ["product_id"], False),
    ("purchase_batches", "ix_purchase_batches_warehouse_id", ["warehouse_id"], False),
    (
        "purchase_batches",
        "ix_purchase_batches_fifo",
        ["product_id", "warehouse_id", "status", "purchase_date"],
        False,
    ),
    ("inventory", "ix_inventory_product_id", ["product_id"], False),
    ("inventory", "ix_inventory_warehouse_id", ["warehouse_id"], False),
    ("stock_movements", "ix_stock_movements_product_id", ["product_id"], False),
    ("stock_movements", "ix_stock_movements_warehouse_id", ["warehouse_id"], False),
    ("stock_movements", "ix_stock_movements_purchase_batch_id", ["purchase_batch_id"], False),
    ("stock_movements", "ix_stock_movements_reference_id", ["reference_id"], False),
    (
        "stock_movements",
        "ix_stock_movements_product_warehouse_moved_at",
        ["product_id", "warehouse_id", "moved_at"],
        False,
    ),
    ("carts", "ix_carts_customer_ref_status", ["customer_ref", "status"], False),
    ("cart_items", "ix_cart_items_cart_id", ["cart_id"], False),
    ("cart_items", "ix_cart_items_product_id", ["product_id"], False),
    ("orders", "ix_orders_cart_id", ["cart_id"], False),
    ("orders", "ix_orders_warehouse_id", ["warehouse_id"], False),
    ("orders", "ix_orders_sale_id", ["sale_id"], False),
    ("orders", "ix_orders_status_created_at", ["status", "created_at"], False),
    ("order_items", "ix_order_items_order_id", ["order_id"], False),
    ("order_items", "ix_order_items_product_id", ["product_id"], False),
    ("order_allocations", "ix_order_allocations_order_item_id", ["order_item_id"], False),
    ("order_allocations", "ix_order_allocations_purchase_batch_id", ["purchase_batch_id"], False),
    ("order_status_history", "ix_order_status_history_order_id", ["order_id"], False),
    ("sales", "ix_sales_warehouse_id", ["warehouse_id"], False),
    ("sales", "ix_sales_warehouse_created_at", ["warehouse_id", "created_at"], False),
    ("sale_items", "ix_sale_items_sale_id", ["sale_id"], False),
    ("sale_items", "ix_sale_items_product_id", ["product_id"], False),
    ("payments", "ix_payments_sale_id", ["sale_id"], False),
    ("payments", "ix_payments_order_id", ["order_id"], False),
    ("audit_logs", "ix_audit_logs_target_id", ["target_id"], False),
    ("audit_logs", "ix_audit_logs_action_created_at", ["action", "created_at"], False),
    ("audit_logs", "ix_audit_logs_target_created_at", ["target_type", "target_id", "created_at"], False),
]


def _create_catalog_tables(inspector: sa.Inspector) -> None:
    if not _table_exists(inspector, "categories"):
        op.create_table(
            "categories",
            _id_column(),
            sa.Column("parent_id", sa.String(length=36), nullable=True),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("min_margin_pct", sa.Numeric(5, 2), nullable=True),
            sa.Column("normal_margin_pct", sa.Numeric(5, 2), nullable=True),
            _flag("is_active", "1"),
            _created_at(),
            sa.ForeignKeyConstraint(["parent_id"], ["categories.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "warehouses"):
        op.create_table(
            "warehouses",
            _id_column(),
            sa.Column("code", sa.String(length=30), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            _flag("is_active", "1"),
            _flag("visible_online", "0"),
            _flag("is_main", "0"),
            sa.Column("picking_priority", sa.Integer(), nullable=False, server_default="0"),
            _created_at(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
        )

    if not _table_exists(inspector, "products"):
        op.create_table(
            "products",
            _id_column(),
            sa.Column("sku", sa.String(length=100), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("category_id", sa.String(length=36), nullable=True),
            _flag("is_active", "1"),
            _flag("visible_online", "1"),
            _created_at(),
            sa.ForeignKeyConstraint(["category_id"], ["categories.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("sku"),
        )

    if not _table_exists(inspector, "price_lists"):
        op.create_table(
            "price_lists",
            _id_column(),
            sa.Column("code", sa.String(length=30), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            _flag("is_active", "1"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
        )

    if not _table_exists(inspector, "product_prices"):
        op.create_table(
            "product_prices",
            _id_column(),
            sa.Column("product_id", sa.String(length=36), nullable=False),
            sa.Column("price_list_id", sa.String(length=36), nullable=False),
            sa.Column("warehouse_id", sa.String(length=36), nullable=True),
            _money("price"),
            _updated_at(),
            sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
            sa.ForeignKeyConstraint(["price_list_id"], ["price_lists.id"]),
            sa.ForeignKeyConstraint(["warehouse_id"], ["warehouses.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("product_id", "price_list_id", "warehouse_id", name="uq_product_prices_scope"),
        )


def _create_stock_tables(inspector: sa.Inspector) -> None:
    if not _table_exists(inspector, "purchases"):
        op.create_table(
            "purchases",
            _id_column(),
            sa.Column("supplier_name", sa.String(length=160), nullable=False),
            sa.Column("supplier_doc_number", sa.String(length=20), nullable=True),
            sa.Column("warehouse_id", sa.String(length=36), nullable=False),
            sa.Column("series", sa.String(length=10), nullable=False),
            sa.Column("number", sa.String(length=20), nullable=False),
            sa.Column("purchase_date", sa.Date(), nullable=False),
            sa.Column("currency", sa.String(length=3), nullable=False),
            _money("subtotal"),
            _money("tax"),
            _money("total"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="registered"),
            sa.Column("note", sa.String(length=255), nullable=True),
            _created_at(),
            sa.Column("voided_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["warehouse_id"], ["warehouses.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "supplier_doc_number", "series", "number", name="uq_purchases_supplier_document"
            ),
        )

    if not _table_exists(inspector, "purchase_details"):
        op.create_table(
            "purchase_details",
            _id_column(),
            sa.Column("purchase_id", sa.String(length=36), nullable=False),
            sa.Column("product_id", sa.String(length=36), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            _money("unit_cost"),
            _money("distribution_price"),
            _money("line_total"),
            sa.Column("expiry_date", sa.Date(), nullable=True),
            sa.ForeignKeyConstraint(["purchase_id"], ["purchases.id"]),
            sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "purchase_batches"):
        op.create_table(
            "purchase_batches",
            _id_column(),
            sa.Column("purchase_id", sa.String(length=36), nullable=True),
            sa.Column("product_id", sa.String(length=36), nullable=False),
            sa.Column("warehouse_id", sa.String(length=36), nullable=False),
            sa.Column("batch_code", sa.String(length=80), nullable=False),
            sa.Column("quantity_purchased", sa.Integer(), nullable=False),
            sa.Column("quantity_available", sa.Integer(), nullable=False),
            _money("purchase_price"),
            _money("distribution_price"),
            sa.Column("purchase_date", sa.Date(), nullable=False),
            sa.Column("expiry_date", sa.Date(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
            sa.Column("notes", sa.String(length=255), nullable=True),
            _created_at(),
            sa.CheckConstraint("quantity_available >= 0", name="ck_purchase_batches_available_non_negative"),
            sa.CheckConstraint(
                "quantity_available <= quantity_purchased",
                name="ck_purchase_batches_available_le_purchased",
            ),
            sa.ForeignKeyConstraint(["purchase_id"], ["purchases.id"]),
            sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
            sa.ForeignKeyConstraint(["warehouse_id"], ["warehouses.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "inventory"):
        op.create_table(
            "inventory",
            _id_column(),
            sa.Column("product_id", sa.String(length=36), nullable=False),
            sa.Column("warehouse_id", sa.String(length=36), nullable=False),
            sa.Column("available_stock", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("reserved_stock", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_movement_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint("available_stock >= 0", name="ck_inventory_available_non_negative"),
            sa.CheckConstraint("reserved_stock >= 0", name="ck_inventory_reserved_non_negative"),
            sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
            sa.ForeignKeyConstraint(["warehouse_id"], ["warehouses.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("product_id", "warehouse_id", name="uq_inventory_product_warehouse"),
        )

    if not _table_exists(inspector, "stock_movements"):
        op.create_table(
            "stock_movements",
            _id_column(),
            sa.Column("product_id", sa.String(length=36), nullable=False),
            sa.Column("warehouse_id", sa.String(length=36), nullable=False),
            sa.Column("purchase_batch_id", sa.String(length=36), nullable=True),
            sa.Column("type", sa.String(length=10), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            _money("unit_cost", nullable=True),
            sa.Column("reference_type", sa.String(length=30), nullable=False),
            sa.Column("reference_id", sa.String(length=36), nullable=True),
            sa.Column("note", sa.String(length=255), nullable=True),
            sa.Column("moved_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_positive"),
            sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
            sa.ForeignKeyConstraint(["warehouse_id"], ["warehouses.id"]),
            sa.ForeignKeyConstraint(["purchase_batch_id"], ["purchase_batches.id"]),
            sa.PrimaryKeyConstraint("id"),
        )


def _create_order_tables(inspector: sa.Inspector) -> None:
    if not _table_exists(inspector, "carts"):
        op.create_table(
            "carts",
            _id_column(),
            sa.Column("customer_ref", sa.String(length=120), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="open"),
            _created_at(),
            _updated_at(),
            sa.Column("converted_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "cart_items"):
        op.create_table(
            "cart_items",
            _id_column(),
            sa.Column("cart_id", sa.String(length=36), nullable=False),
            sa.Column("product_id", sa.String(length=36), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            _money("unit_price"),
            _created_at(),
            sa.CheckConstraint("quantity > 0", name="ck_cart_items_quantity_positive"),
            sa.ForeignKeyConstraint(["cart_id"], ["carts.id"]),
            sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("cart_id", "product_id", name="uq_cart_items_cart_product"),
        )

    if not _table_exists(inspector, "orders"):
        op.create_table(
            "orders",
            _id_column(),
            sa.Column("code", sa.String(length=40), nullable=False),
            sa.Column("cart_id", sa.String(length=36), nullable=True),
            sa.Column("customer_name", sa.String(length=160), nullable=False),
            sa.Column("customer_doc_type", sa.String(length=10), nullable=True),
            sa.Column("customer_doc_number", sa.String(length=20), nullable=True),
            sa.Column("customer_email", sa.String(length=255), nullable=True),
            sa.Column("customer_phone", sa.String(length=40), nullable=True),
            sa.Column("shipping_address", sa.String(length=255), nullable=True),
            sa.Column("shipping_district", sa.String(length=120), nullable=True),
            sa.Column("shipping_city", sa.String(length=120), nullable=True),
            sa.Column("shipping_reference", sa.String(length=255), nullable=True),
            sa.Column("warehouse_id", sa.String(length=36), nullable=False),
            sa.Column("currency", sa.String(length=3), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            _money("subtotal"),
            _money("tax"),
            sa.Column("shipping_cost", sa.Numeric(12, 2), nullable=False, server_default="0"),
            _money("total"),
            sa.Column("payment_method", sa.String(length=30), nullable=True),
            sa.Column("payment_reference", sa.String(length=120), nullable=True),
            sa.Column("sale_id", sa.String(length=36), nullable=True),
            sa.Column("note", sa.String(length=255), nullable=True),
            _created_at(),
            _updated_at(),
            sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["cart_id"], ["carts.id"]),
            sa.ForeignKeyConstraint(["warehouse_id"], ["warehouses.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
        )

    if not _table_exists(inspector, "order_items"):
        op.create_table(
            "order_items",
            _id_column(),
            sa.Column("order_id", sa.String(length=36), nullable=False),
            sa.Column("product_id", sa.String(length=36), nullable=False),
            sa.Column("warehouse_id", sa.String(length=36), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            _money("unit_price"),
            _money("line_total"),
            _money("unit_cost"),
            sa.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
            sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
            sa.ForeignKeyConstraint(["warehouse_id"], ["warehouses.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "order_allocations"):
        op.create_table(
            "order_allocations",
            _id_column(),
            sa.Column("order_item_id", sa.String(length=36), nullable=False),
            sa.Column("purchase_batch_id", sa.String(length=36), nullable=False),
            sa.Column("sequence", sa.Integer(), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            _money("unit_cost"),
            sa.CheckConstraint("quantity > 0", name="ck_order_allocations_quantity_positive"),
            sa.ForeignKeyConstraint(["order_item_id"], ["order_items.id"]),
            sa.ForeignKeyConstraint(["purchase_batch_id"], ["purchase_batches.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("order_item_id", "sequence", name="uq_order_allocations_item_sequence"),
        )

    if not _table_exists(inspector, "order_status_history"):
        op.create_table(
            "order_status_history",
            _id_column(),
            sa.Column("order_id", sa.String(length=36), nullable=False),
            sa.Column("from_status", sa.String(length=20), nullable=True),
            sa.Column("to_status", sa.String(length=20), nullable=False),
            sa.Column("note", sa.String(length=255), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "sales"):
        op.create_table(
            "sales",
            _id_column(),
            sa.Column("code", sa.String(length=40), nullable=False),
            sa.Column("order_id", sa.String(length=36), nullable=True),
            sa.Column("customer_name", sa.String(length=160), nullable=False),
            sa.Column("customer_doc_type", sa.String(length=10), nullable=True),
            sa.Column("customer_doc_number", sa.String(length=20), nullable=True),
            sa.Column("warehouse_id", sa.String(length=36), nullable=False),
            sa.Column("currency", sa.String(length=3), nullable=False),
            _money("subtotal"),
            _money("tax"),
            _money("total"),
            _money("cost_total"),
            _money("margin_total"),
            sa.Column("payment_status", sa.String(length=20), nullable=False, server_default="paid"),
            _created_at(),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
            sa.ForeignKeyConstraint(["warehouse_id"], ["warehouses.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
            sa.UniqueConstraint("order_id"),
        )

    if not _table_exists(inspector, "sale_items"):
        op.create_table(
            "sale_items",
            _id_column(),
            sa.Column("sale_id", sa.String(length=36), nullable=False),
            sa.Column("product_id", sa.String(length=36), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            _money("unit_price"),
            _money("line_total"),
            _money("unit_cost"),
            _money("cost_total"),
            sa.Column("margin_pct", sa.Numeric(7, 2), nullable=False),
            _flag("below_min_margin", "0"),
            sa.ForeignKeyConstraint(["sale_id"], ["sales.id"]),
            sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "payments"):
        op.create_table(
            "payments",
            _id_column(),
            sa.Column("sale_id", sa.String(length=36), nullable=False),
            sa.Column("order_id", sa.String(length=36), nullable=True),
            _money("amount"),
            sa.Column("currency", sa.String(length=3), nullable=False),
            sa.Column("method", sa.String(length=30), nullable=False),
            sa.Column("reference", sa.String(length=120), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="approved"),
            sa.Column("paid_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["sale_id"], ["sales.id"]),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "audit_logs"):
        op.create_table(
            "audit_logs",
            _id_column(),
            sa.Column("actor", sa.String(length=120), nullable=True),
            sa.Column("action", sa.String(length=100), nullable=False),
            sa.Column("target_type", sa.String(length=100), nullable=False),
            sa.Column("target_id", sa.String(length=36), nullable=True),
            sa.Column("metadata_json", sa.JSON(), nullable=True),
            _created_at(),
            sa.PrimaryKeyConstraint("id"),
        )


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    _create_catalog_tables(inspector)
    inspector = sa.inspect(bind)
    _create_stock_tables(inspector)
    inspector = sa.inspect(bind)
    _create_order_tables(inspector)

    inspector = sa.inspect(bind)
    for table_name, index_name, columns, unique in INDEXES:
        if _table_exists(inspector, table_name) and not _index_exists(inspector, table_name, index_name):
            op.create_index(index_name, table_name, columns, unique=unique)


def downgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    for table_name, index_name, _, _ in reversed(INDEXES):
        if _table_exists(inspector, table_name) and _index_exists(inspector, table_name, index_name):
            op.drop_index(index_name, table_name=table_name)

    for table_name in (
        "audit_logs",
        "payments",
        "sale_items",
        "sales",
        "order_status_history",
        "order_allocations",
        "order_items",
        "orders",
        "cart_items",
        "carts",
        "stock_movements",
        "inventory",
        "purchase_batches",
        "purchase_details",
        "purchases",
        "product_prices",
        "price_lists",
        "products",
        "warehouses",
        "categories",
    ):
        if _table_exists(inspector, table_name):
            op.drop_table(table_name)
