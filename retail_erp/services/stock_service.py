import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from retail_erp.core.errors import DomainValidationError, InsufficientStockError
from retail_erp.core.id_utils import new_id
from retail_erp.core.observability import log_event
from retail_erp.models.inventory import (
    BATCH_ACTIVE,
    RESERVATION_HELD,
    Inventory,
    PurchaseBatch,
    StockMovement,
    StockReservation,
)
from retail_erp.models.order import ORDER_PENDING, Order, OrderAllocation, OrderItem
from retail_erp.services import allocation_service, batch_service, catalog_service, inventory_service
from retail_erp.services.allocation_service import AllocationResult
from retail_erp.services.audit_service import log_audit_event

logger = logging.getLogger(__name__)


@dataclass
class StockInResult:
    batch: PurchaseBatch
    inventory: Inventory


@dataclass
class TransferResult:
    transfer_id: str
    product_id: str
    from_warehouse_id: str
    to_warehouse_id: str
    quantity: int
    destination_batch_ids: list[str] = field(default_factory=list)
    allocation: AllocationResult | None = None


@dataclass
class ReconcileRow:
    product_id: str
    warehouse_id: str
    ledger_available: int
    ledger_reserved: int
    expected_available: int
    expected_reserved: int
    fixed: bool = False

    @property
    def in_sync(self) -> bool:
        return self.ledger_available == self.expected_available and self.ledger_reserved == self.expected_reserved


def stock_in(
    db: Session,
    product_id: str,
    warehouse_id: str,
    quantity: int,
    unit_cost: Decimal,
    distribution_price: Decimal | None = None,
    *,
    expiry_date: date | None = None,
    purchase_date: date | None = None,
    purchase_id: str | None = None,
    batch_code: str | None = None,
    reference_type: str = "adjustment",
    reference_id: str | None = None,
    note: str | None = None,
) -> StockInResult:
    """Receive units into a new batch and credit the ledger's available stock."""
    catalog_service.get_product(db, product_id)
    catalog_service.get_warehouse(db, warehouse_id)

    inventory = inventory_service.lock_inventory(db, product_id, warehouse_id, create=True)
    batch = batch_service.replenish(
        db,
        product_id,
        warehouse_id,
        quantity,
        unit_cost,
        distribution_price if distribution_price is not None else unit_cost,
        expiry_date=expiry_date,
        purchase_id=purchase_id,
        purchase_date=purchase_date,
        batch_code=batch_code,
        notes=note,
        reference_type=reference_type,
        reference_id=reference_id,
    )
    inventory_service.add_available(db, inventory, quantity)

    log_event(
        logger,
        "stock_in",
        product_id=product_id,
        warehouse_id=warehouse_id,
        quantity=quantity,
        batch_id=batch.id,
        reference_type=reference_type,
    )
    db.flush()
    return StockInResult(batch=batch, inventory=inventory)


def adjust_out(
    db: Session,
    product_id: str,
    warehouse_id: str,
    quantity: int,
    reason: str,
) -> AllocationResult:
    """Write units off (damage, loss, count correction). FIFO straight out of available."""
    if quantity <= 0:
        raise DomainValidationError("Quantity to adjust must be positive")
    if not reason or not reason.strip():
        raise DomainValidationError("An adjustment reason is required")

    inventory = inventory_service.lock_inventory(db, product_id, warehouse_id)
    available = inventory.available_stock if inventory else 0
    if inventory is None or available < quantity:
        raise InsufficientStockError(
            product_id=product_id,
            warehouse_id=warehouse_id,
            requested=quantity,
            available=available,
        )

    adjustment_id = new_id()
    result = allocation_service.consume_fifo(
        db,
        product_id,
        warehouse_id,
        quantity,
        ledger_available=available,
        reference_type="adjustment",
        reference_id=adjustment_id,
        note=reason.strip(),
    )
    inventory_service.remove_available(db, inventory, quantity)

    log_audit_event(
        db,
        action="inventory.adjust_out",
        target_type="inventory",
        target_id=inventory.id,
        metadata_json={
            "adjustment_id": adjustment_id,
            "product_id": product_id,
            "warehouse_id": warehouse_id,
            "quantity": quantity,
            "reason": reason.strip(),
            "cost_total": str(result.total_cost),
        },
    )
    db.flush()
    return result


def transfer_stock(
    db: Session,
    product_id: str,
    from_warehouse_id: str,
    to_warehouse_id: str,
    quantity: int,
    note: str | None = None,
) -> TransferResult:
    """
    Move units between warehouses. Origin batches are consumed FIFO and each consumed
    slice lands in a new destination batch with the same purchase date and prices.
    """
    if from_warehouse_id == to_warehouse_id:
        raise DomainValidationError("Origin and destination warehouses must differ")
    if quantity <= 0:
        raise DomainValidationError("Quantity to transfer must be positive")
    catalog_service.get_product(db, product_id)
    catalog_service.get_warehouse(db, from_warehouse_id)
    destination = catalog_service.get_warehouse(db, to_warehouse_id)
    if not destination.is_active:
        raise DomainValidationError(f"Destination warehouse is not active: {destination.code}")

    # Both rows locked in sorted key order; the destination row is created when missing.
    origin_key = (product_id, from_warehouse_id)
    destination_key = (product_id, to_warehouse_id)
    locked: dict[tuple[str, str], Inventory | None] = {}
    for key in sorted([origin_key, destination_key]):
        locked[key] = inventory_service.lock_inventory(db, key[0], key[1], create=key == destination_key)
    origin = locked[origin_key]
    target = locked[destination_key]

    available = origin.available_stock if origin else 0
    if origin is None or available < quantity:
        raise InsufficientStockError(
            product_id=product_id,
            warehouse_id=from_warehouse_id,
            requested=quantity,
            available=available,
        )

    transfer_id = new_id()
    allocation = allocation_service.consume_fifo(
        db,
        product_id,
        from_warehouse_id,
        quantity,
        ledger_available=available,
        reference_type="transfer",
        reference_id=transfer_id,
        note=note,
    )
    inventory_service.remove_available(db, origin, quantity)

    destination_batch_ids: list[str] = []
    for consumption in allocation.batch_consumptions:
        source = batch_service.get_batch(db, consumption.batch_id)
        batch = batch_service.replenish(
            db,
            product_id,
            to_warehouse_id,
            consumption.quantity,
            source.purchase_price,
            source.distribution_price,
            expiry_date=source.expiry_date,
            purchase_id=source.purchase_id,
            purchase_date=source.purchase_date,
            batch_code=source.batch_code,
            notes=f"Transfer from batch {source.id}",
            reference_type="transfer",
            reference_id=transfer_id,
        )
        destination_batch_ids.append(batch.id)
    inventory_service.add_available(db, target, quantity)

    log_audit_event(
        db,
        action="inventory.transfer",
        target_type="inventory",
        target_id=transfer_id,
        metadata_json={
            "product_id": product_id,
            "from_warehouse_id": from_warehouse_id,
            "to_warehouse_id": to_warehouse_id,
            "quantity": quantity,
            "batches": len(destination_batch_ids),
        },
    )
    log_event(
        logger,
        "stock_transferred",
        transfer_id=transfer_id,
        product_id=product_id,
        from_warehouse_id=from_warehouse_id,
        to_warehouse_id=to_warehouse_id,
        quantity=quantity,
    )
    db.flush()
    return TransferResult(
        transfer_id=transfer_id,
        product_id=product_id,
        from_warehouse_id=from_warehouse_id,
        to_warehouse_id=to_warehouse_id,
        quantity=quantity,
        destination_batch_ids=destination_batch_ids,
        allocation=allocation,
    )


def list_movements(
    db: Session,
    *,
    product_id: str | None = None,
    warehouse_id: str | None = None,
    movement_type: str | None = None,
    reference_type: str | None = None,
    reference_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[StockMovement], int]:
    count_stmt = select(func.count(StockMovement.id))
    data_stmt = select(StockMovement)
    filters = []
    if product_id:
        filters.append(StockMovement.product_id == product_id)
    if warehouse_id:
        filters.append(StockMovement.warehouse_id == warehouse_id)
    if movement_type:
        filters.append(StockMovement.type == movement_type)
    if reference_type:
        filters.append(StockMovement.reference_type == reference_type)
    if reference_id:
        filters.append(StockMovement.reference_id == reference_id)
    if filters:
        count_stmt = count_stmt.where(*filters)
        data_stmt = data_stmt.where(*filters)

    total_count = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        data_stmt.order_by(StockMovement.moved_at.desc(), StockMovement.id).offset(offset).limit(limit)
    ).scalars().all()
    return list(rows), total_count


def _expected_available(db: Session, product_id: str | None, warehouse_id: str | None) -> dict[tuple[str, str], int]:
    stmt = (
        select(
            PurchaseBatch.product_id,
            PurchaseBatch.warehouse_id,
            func.coalesce(func.sum(PurchaseBatch.quantity_available), 0),
        )
        .where(PurchaseBatch.status == BATCH_ACTIVE)
        .group_by(PurchaseBatch.product_id, PurchaseBatch.warehouse_id)
    )
    if product_id:
        stmt = stmt.where(PurchaseBatch.product_id == product_id)
    if warehouse_id:
        stmt = stmt.where(PurchaseBatch.warehouse_id == warehouse_id)
    return {(pid, wid): int(total) for pid, wid, total in db.execute(stmt).all()}


def _expected_reserved(db: Session, product_id: str | None, warehouse_id: str | None) -> dict[tuple[str, str], int]:
    stmt = (
        select(
            OrderItem.product_id,
            OrderItem.warehouse_id,
            func.coalesce(func.sum(OrderAllocation.quantity), 0),
        )
        .join(OrderAllocation, OrderAllocation.order_item_id == OrderItem.id)
        .join(Order, Order.id == OrderItem.order_id)
        .where(Order.status == ORDER_PENDING)
        .group_by(OrderItem.product_id, OrderItem.warehouse_id)
    )
    if product_id:
        stmt = stmt.where(OrderItem.product_id == product_id)
    if warehouse_id:
        stmt = stmt.where(OrderItem.warehouse_id == warehouse_id)
    expected = {(pid, wid): int(total) for pid, wid, total in db.execute(stmt).all()}

    held_stmt = (
        select(
            StockReservation.product_id,
            StockReservation.warehouse_id,
            func.coalesce(func.sum(StockReservation.quantity), 0),
        )
        .where(StockReservation.status == RESERVATION_HELD)
        .group_by(StockReservation.product_id, StockReservation.warehouse_id)
    )
    if product_id:
        held_stmt = held_stmt.where(StockReservation.product_id == product_id)
    if warehouse_id:
        held_stmt = held_stmt.where(StockReservation.warehouse_id == warehouse_id)
    for pid, wid, total in db.execute(held_stmt).all():
        expected[(pid, wid)] = expected.get((pid, wid), 0) + int(total)
    return expected


def _ledger_snapshot(db: Session, product_id: str | None, warehouse_id: str | None) -> dict[tuple[str, str], Inventory]:
    stmt = select(Inventory).execution_options(populate_existing=True)
    if product_id:
        stmt = stmt.where(Inventory.product_id == product_id)
    if warehouse_id:
        stmt = stmt.where(Inventory.warehouse_id == warehouse_id)
    return {(row.product_id, row.warehouse_id): row for row in db.execute(stmt).scalars().all()}


def _reconcile_keys(db: Session, product_id: str | None, warehouse_id: str | None) -> set[tuple[str, str]]:
    keys = set(_ledger_snapshot(db, product_id, warehouse_id))
    keys |= set(_expected_available(db, product_id, warehouse_id))
    keys |= set(_expected_reserved(db, product_id, warehouse_id))
    return keys


def _lock_reconcile_scope(db: Session, product_id: str | None, warehouse_id: str | None) -> None:
    # A row created between the key scan and the lock shows up on the next scan.
    locked: set[tuple[str, str]] = set()
    while True:
        pending = _reconcile_keys(db, product_id, warehouse_id) - locked
        if not pending:
            return
        inventory_service.lock_inventory_rows(db, pending)
        locked |= pending


def reconcile_inventory(
    db: Session,
    product_id: str | None = None,
    warehouse_id: str | None = None,
    fix: bool = False,
) -> list[ReconcileRow]:
    """
    Compare each ledger row with what the batch store and open reservations imply.

    Expected available is the sum of active batch quantities; expected reserved is the
    sum of allocations held by pending orders and held stock reservations. With
    fix=True every row in scope is locked before anything is read, so the figures
    written back cannot be older than a concurrent allocation. Returns one row per
    (product, warehouse) seen on either side.
    """
    db.flush()
    if fix:
        _lock_reconcile_scope(db, product_id, warehouse_id)
    expected_available = _expected_available(db, product_id, warehouse_id)
    expected_reserved = _expected_reserved(db, product_id, warehouse_id)
    ledger = _ledger_snapshot(db, product_id, warehouse_id)

    keys = sorted(set(ledger) | set(expected_available) | set(expected_reserved))
    report: list[ReconcileRow] = []
    for key in keys:
        row = ledger.get(key)
        entry = ReconcileRow(
            product_id=key[0],
            warehouse_id=key[1],
            ledger_available=row.available_stock if row else 0,
            ledger_reserved=row.reserved_stock if row else 0,
            expected_available=expected_available.get(key, 0),
            expected_reserved=expected_reserved.get(key, 0),
        )
        if not entry.in_sync:
            log_event(
                logger,
                "inventory_drift",
                level=logging.WARNING,
                product_id=entry.product_id,
                warehouse_id=entry.warehouse_id,
                ledger_available=entry.ledger_available,
                ledger_reserved=entry.ledger_reserved,
                expected_available=entry.expected_available,
                expected_reserved=entry.expected_reserved,
            )
            if fix:
                locked = inventory_service.lock_inventory(db, key[0], key[1], create=True)
                inventory_service.overwrite_counts(
                    db,
                    locked,
                    available=entry.expected_available,
                    reserved=entry.expected_reserved,
                )
                entry.fixed = True
                log_audit_event(
                    db,
                    action="inventory.reconcile",
                    target_type="inventory",
                    target_id=locked.id,
                    metadata_json={
                        "product_id": entry.product_id,
                        "warehouse_id": entry.warehouse_id,
                        "from_available": entry.ledger_available,
                        "from_reserved": entry.ledger_reserved,
                        "to_available": entry.expected_available,
                        "to_reserved": entry.expected_reserved,
                    },
                )
        report.append(entry)

    if fix:
        db.flush()
    return report
