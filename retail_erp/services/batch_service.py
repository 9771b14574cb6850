from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from retail_erp.core.errors import DomainValidationError, InsufficientBatchStockError, InventoryIntegrityError
from retail_erp.core.id_utils import generate_short_token, new_id
from retail_erp.core.money import to_money
from retail_erp.models.inventory import (
    BATCH_ACTIVE,
    BATCH_DEPLETED,
    BATCH_INACTIVE,
    MOVEMENT_IN,
    MOVEMENT_OUT,
    PurchaseBatch,
)
from retail_erp.services.stock_movement_service import record_movement


def _fifo_order():
    return (
        PurchaseBatch.purchase_date.asc(),
        PurchaseBatch.created_at.asc(),
        PurchaseBatch.id.asc(),
    )


def list_active_batches(
    db: Session,
    product_id: str,
    warehouse_id: str,
    *,
    for_update: bool = False,
) -> list[PurchaseBatch]:
    """Active batches with stock left, oldest purchase first."""
    stmt = (
        select(PurchaseBatch)
        .where(
            PurchaseBatch.product_id == product_id,
            PurchaseBatch.warehouse_id == warehouse_id,
            PurchaseBatch.status == BATCH_ACTIVE,
            PurchaseBatch.quantity_available > 0,
        )
        .order_by(*_fifo_order())
    )
    if for_update:
        stmt = stmt.with_for_update()
    return list(db.execute(stmt).scalars().all())


def list_batches(
    db: Session,
    *,
    product_id: str | None = None,
    warehouse_id: str | None = None,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[PurchaseBatch]:
    stmt = select(PurchaseBatch)
    if product_id:
        stmt = stmt.where(PurchaseBatch.product_id == product_id)
    if warehouse_id:
        stmt = stmt.where(PurchaseBatch.warehouse_id == warehouse_id)
    if status:
        stmt = stmt.where(PurchaseBatch.status == status)
    return list(db.execute(stmt.order_by(*_fifo_order()).offset(offset).limit(limit)).scalars().all())


def get_batch(db: Session, batch_id: str) -> PurchaseBatch | None:
    return db.get(PurchaseBatch, batch_id)


def sum_active_quantity(batches: list[PurchaseBatch]) -> int:
    return sum(batch.quantity_available for batch in batches if batch.status == BATCH_ACTIVE)


def consume_batch(
    db: Session,
    batch: PurchaseBatch,
    quantity: int,
    reference_type: str,
    reference_id: str | None,
    *,
    note: str | None = None,
) -> PurchaseBatch:
    if quantity <= 0:
        raise DomainValidationError("Quantity to consume must be positive")
    if batch.status != BATCH_ACTIVE or quantity > batch.quantity_available:
        raise InsufficientBatchStockError(
            batch_id=batch.id,
            requested=quantity,
            available=batch.quantity_available if batch.status == BATCH_ACTIVE else 0,
        )

    batch.quantity_available -= quantity
    if batch.quantity_available == 0:
        batch.status = BATCH_DEPLETED

    record_movement(
        db,
        product_id=batch.product_id,
        warehouse_id=batch.warehouse_id,
        purchase_batch_id=batch.id,
        movement_type=MOVEMENT_OUT,
        quantity=quantity,
        unit_cost=batch.purchase_price,
        reference_type=reference_type,
        reference_id=reference_id,
        note=note,
    )
    return batch


def restore_batch(
    db: Session,
    batch: PurchaseBatch,
    quantity: int,
    reference_type: str,
    reference_id: str | None,
    *,
    note: str | None = None,
) -> PurchaseBatch:
    if quantity <= 0:
        raise DomainValidationError("Quantity to restore must be positive")
    if batch.status == BATCH_INACTIVE:
        raise InventoryIntegrityError(
            f"Batch {batch.id} is inactive and cannot take stock back",
            details=[{"batch_id": batch.id, "requested": quantity}],
        )
    if batch.quantity_available + quantity > batch.quantity_purchased:
        raise InventoryIntegrityError(
            f"Restoring {quantity} units would exceed the purchased quantity of batch {batch.id}",
            details=[
                {
                    "batch_id": batch.id,
                    "requested": quantity,
                    "quantity_available": batch.quantity_available,
                    "quantity_purchased": batch.quantity_purchased,
                }
            ],
        )

    batch.quantity_available += quantity
    batch.status = BATCH_ACTIVE

    record_movement(
        db,
        product_id=batch.product_id,
        warehouse_id=batch.warehouse_id,
        purchase_batch_id=batch.id,
        movement_type=MOVEMENT_IN,
        quantity=quantity,
        unit_cost=batch.purchase_price,
        reference_type=reference_type,
        reference_id=reference_id,
        note=note,
    )
    return batch


def replenish(
    db: Session,
    product_id: str,
    warehouse_id: str,
    quantity: int,
    unit_cost: Decimal,
    distribution_price: Decimal,
    expiry_date: date | None = None,
    purchase_id: str | None = None,
    *,
    purchase_date: date | None = None,
    batch_code: str | None = None,
    notes: str | None = None,
    reference_type: str = "purchase",
    reference_id: str | None = None,
) -> PurchaseBatch:
    """Create a fresh active batch and its inbound movement."""
    if quantity <= 0:
        raise DomainValidationError("Batch quantity must be positive")
    if unit_cost < 0 or distribution_price < 0:
        raise DomainValidationError("Batch prices cannot be negative")

    received_on = purchase_date or date.today()
    batch = PurchaseBatch(
        id=new_id(),
        purchase_id=purchase_id,
        product_id=product_id,
        warehouse_id=warehouse_id,
        batch_code=batch_code or f"L{received_on:%Y%m%d}-{generate_short_token(6)}",
        quantity_purchased=quantity,
        quantity_available=quantity,
        purchase_price=to_money(unit_cost),
        distribution_price=to_money(distribution_price),
        purchase_date=received_on,
        expiry_date=expiry_date,
        status=BATCH_ACTIVE,
        notes=notes,
    )
    db.add(batch)

    record_movement(
        db,
        product_id=product_id,
        warehouse_id=warehouse_id,
        purchase_batch_id=batch.id,
        movement_type=MOVEMENT_IN,
        quantity=quantity,
        unit_cost=batch.purchase_price,
        reference_type=reference_type,
        reference_id=reference_id if reference_id is not None else purchase_id,
        note=notes,
    )
    return batch


def deactivate_batch(
    db: Session,
    batch: PurchaseBatch,
    reference_type: str,
    reference_id: str | None,
    *,
    note: str | None = None,
) -> int:
    """Take an untouched batch out of circulation. Returns the units removed."""
    removed = batch.quantity_available
    if removed > 0:
        record_movement(
            db,
            product_id=batch.product_id,
            warehouse_id=batch.warehouse_id,
            purchase_batch_id=batch.id,
            movement_type=MOVEMENT_OUT,
            quantity=removed,
            unit_cost=batch.purchase_price,
            reference_type=reference_type,
            reference_id=reference_id,
            note=note,
        )
    batch.quantity_available = 0
    batch.status = BATCH_INACTIVE
    return removed
