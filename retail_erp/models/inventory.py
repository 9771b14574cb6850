from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from retail_erp.db.base import Base

BATCH_ACTIVE = "active"
BATCH_INACTIVE = "inactive"
BATCH_DEPLETED = "depleted"

MOVEMENT_IN = "in"
MOVEMENT_OUT = "out"

RESERVATION_HELD = "held"
RESERVATION_RELEASED = "released"
RESERVATION_SETTLED = "settled"


class Inventory(Base):
    """
    Stock counters for one (product, warehouse) pair. Only ledger operations holding the row lock mutate it.
    """
    __tablename__ = "inventory"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("products.id"), nullable=False, index=True)
    warehouse_id: Mapped[str] = mapped_column(String(36), ForeignKey("warehouses.id"), nullable=False, index=True)
    available_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    reserved_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_movement_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("product_id", "warehouse_id", name="uq_inventory_product_warehouse"),
        CheckConstraint("available_stock >= 0", name="ck_inventory_available_non_negative"),
        CheckConstraint("reserved_stock >= 0", name="ck_inventory_reserved_non_negative"),
    )


class PurchaseBatch(Base):
    __tablename__ = "purchase_batches"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    purchase_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("purchases.id"), nullable=True, index=True)
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("products.id"), nullable=False, index=True)
    warehouse_id: Mapped[str] = mapped_column(String(36), ForeignKey("warehouses.id"), nullable=False, index=True)
    batch_code: Mapped[str] = mapped_column(String(80), nullable=False)

    quantity_purchased: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_available: Mapped[int] = mapped_column(Integer, nullable=False)
    purchase_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    distribution_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    purchase_date: Mapped[date] = mapped_column(Date, nullable=False)  # FIFO ordering key
    expiry_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=BATCH_ACTIVE, server_default=BATCH_ACTIVE)
    notes: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint("quantity_available >= 0", name="ck_purchase_batches_available_non_negative"),
        CheckConstraint(
            "quantity_available <= quantity_purchased",
            name="ck_purchase_batches_available_le_purchased",
        ),
        Index(
            "ix_purchase_batches_fifo",
            "product_id",
            "warehouse_id",
            "status",
            "purchase_date",
        ),
    )


class StockMovement(Base):
    """
    Append-only audit trail. One row per batch touched. Quantity is always positive; type gives the direction.
    """
    __tablename__ = "stock_movements"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("products.id"), nullable=False, index=True)
    warehouse_id: Mapped[str] = mapped_column(String(36), ForeignKey("warehouses.id"), nullable=False, index=True)
    purchase_batch_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("purchase_batches.id"), nullable=True, index=True
    )
    type: Mapped[str] = mapped_column(String(10), nullable=False)  # "in", "out"
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    reference_type: Mapped[str] = mapped_column(String(30), nullable=False)  # "purchase", "order", "adjustment"...
    reference_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    note: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    moved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_positive"),
        Index(
            "ix_stock_movements_product_warehouse_moved_at",
            "product_id",
            "warehouse_id",
            "moved_at",
        ),
    )


class StockReservation(Base):
    """
    Stock held outside an order. Units are debited from batches when the hold is taken;
    the ledger carries them as reserved until the hold is released or settled.
    """
    __tablename__ = "stock_reservations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    code: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("products.id"), nullable=False, index=True)
    warehouse_id: Mapped[str] = mapped_column(String(36), ForeignKey("warehouses.id"), nullable=False, index=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RESERVATION_HELD, server_default=RESERVATION_HELD
    )
    reference_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    note: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_stock_reservations_quantity_positive"),
        Index("ix_stock_reservations_status_product_warehouse", "status", "product_id", "warehouse_id"),
    )


class StockReservationBatch(Base):
    __tablename__ = "stock_reservation_batches"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    reservation_id: Mapped[str] = mapped_column(String(36), ForeignKey("stock_reservations.id"), index=True)
    purchase_batch_id: Mapped[str] = mapped_column(String(36), ForeignKey("purchase_batches.id"), index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    __table_args__ = (
        UniqueConstraint("reservation_id", "sequence", name="uq_stock_reservation_batches_sequence"),
        CheckConstraint("quantity > 0", name="ck_stock_reservation_batches_quantity_positive"),
    )
