import logging
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy.orm import Session

from retail_erp.core.errors import DomainValidationError, InsufficientStockError, InventoryInconsistencyError
from retail_erp.core.money import ZERO_MONEY, to_money, weighted_average
from retail_erp.core.observability import log_event
from retail_erp.models.inventory import PurchaseBatch
from retail_erp.services import batch_service, inventory_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchConsumption:
    batch_id: str
    quantity: int
    unit_cost: Decimal


@dataclass
class AllocationResult:
    product_id: str
    warehouse_id: str
    quantity: int
    batch_consumptions: list[BatchConsumption] = field(default_factory=list)
    total_cost: Decimal = ZERO_MONEY
    weighted_unit_cost: Decimal = ZERO_MONEY


def plan_fifo(batches: list[PurchaseBatch], quantity: int) -> list[tuple[PurchaseBatch, int]]:
    """
    Greedy FIFO walk over batches already sorted oldest first.

    Takes min(remaining, batch.quantity_available) from each batch until the request
    is covered. The plan can fall short when the batches hold less than requested;
    callers decide how to treat that.
    """
    plan: list[tuple[PurchaseBatch, int]] = []
    remaining = quantity
    for batch in batches:
        if remaining <= 0:
            break
        take = min(remaining, batch.quantity_available)
        if take <= 0:
            continue
        plan.append((batch, take))
        remaining -= take
    return plan


def _build_result(
    product_id: str,
    warehouse_id: str,
    quantity: int,
    consumptions: list[BatchConsumption],
) -> AllocationResult:
    pairs = [(item.quantity, item.unit_cost) for item in consumptions]
    total_cost = to_money(sum((Decimal(qty) * cost for qty, cost in pairs), ZERO_MONEY))
    return AllocationResult(
        product_id=product_id,
        warehouse_id=warehouse_id,
        quantity=quantity,
        batch_consumptions=consumptions,
        total_cost=total_cost,
        weighted_unit_cost=weighted_average(pairs),
    )


def consume_fifo(
    db: Session,
    product_id: str,
    warehouse_id: str,
    quantity: int,
    *,
    ledger_available: int,
    reference_type: str,
    reference_id: str | None,
    note: str | None = None,
) -> AllocationResult:
    """
    Debit batches oldest first. The caller holds the ledger row lock and updates the
    ledger counters itself.
    """
    inventory_service.require_lock(db, product_id, warehouse_id)
    # Pending batch changes must reach the database before the FIFO query filters on them.
    db.flush()
    batches = batch_service.list_active_batches(db, product_id, warehouse_id, for_update=True)
    plan = plan_fifo(batches, quantity)
    planned = sum(take for _, take in plan)
    if planned < quantity:
        log_event(
            logger,
            "data_integrity_alarm",
            level=logging.ERROR,
            kind="inventory_inconsistency",
            product_id=product_id,
            warehouse_id=warehouse_id,
            ledger_available=ledger_available,
            batches_available=batch_service.sum_active_quantity(batches),
            requested=quantity,
        )
        raise InventoryInconsistencyError(
            product_id=product_id,
            warehouse_id=warehouse_id,
            ledger_available=ledger_available,
            batches_available=batch_service.sum_active_quantity(batches),
            requested=quantity,
        )

    consumptions: list[BatchConsumption] = []
    for batch, take in plan:
        batch_service.consume_batch(db, batch, take, reference_type, reference_id, note=note)
        consumptions.append(
            BatchConsumption(batch_id=batch.id, quantity=take, unit_cost=to_money(batch.purchase_price))
        )
    return _build_result(product_id, warehouse_id, quantity, consumptions)


def allocate(
    db: Session,
    product_id: str,
    warehouse_id: str,
    quantity: int,
    reference_type: str = "manual",
    reference_id: str | None = None,
) -> AllocationResult:
    """
    Reserve `quantity` units of a product in a warehouse, debiting batches FIFO.

    Locks the ledger row, checks available stock, consumes batches oldest first and
    moves the quantity from available to reserved. Runs inside the caller's unit of
    work; any error leaves the caller to roll back.
    """
    if quantity <= 0:
        raise DomainValidationError("Quantity to allocate must be positive")

    inventory = inventory_service.lock_inventory(db, product_id, warehouse_id)
    available = inventory.available_stock if inventory else 0
    if inventory is None or available < quantity:
        raise InsufficientStockError(
            product_id=product_id,
            warehouse_id=warehouse_id,
            requested=quantity,
            available=available,
        )

    result = consume_fifo(
        db,
        product_id,
        warehouse_id,
        quantity,
        ledger_available=available,
        reference_type=reference_type,
        reference_id=reference_id,
    )
    inventory_service.reserve(db, inventory, quantity)

    log_event(
        logger,
        "stock_allocated",
        product_id=product_id,
        warehouse_id=warehouse_id,
        quantity=quantity,
        batches=len(result.batch_consumptions),
        weighted_unit_cost=str(result.weighted_unit_cost),
        reference_type=reference_type,
        reference_id=reference_id,
    )
    return result


def release_allocation(
    db: Session,
    product_id: str,
    warehouse_id: str,
    consumptions: list[BatchConsumption],
    *,
    reference_type: str,
    reference_id: str | None,
    note: str | None = None,
) -> int:
    """
    Undo an allocation: batches are restored in exact reverse allocation order and
    the released units move from reserved back to available. Returns the units released.
    """
    inventory = inventory_service.lock_inventory(db, product_id, warehouse_id)
    if inventory is None:
        raise InventoryInconsistencyError(
            product_id=product_id,
            warehouse_id=warehouse_id,
            ledger_available=0,
            batches_available=0,
            requested=sum(item.quantity for item in consumptions),
        )

    released = 0
    for item in reversed(consumptions):
        batch = batch_service.get_batch(db, item.batch_id)
        if batch is None:
            raise InventoryInconsistencyError(
                product_id=product_id,
                warehouse_id=warehouse_id,
                ledger_available=inventory.available_stock,
                batches_available=0,
                requested=item.quantity,
            )
        batch_service.restore_batch(db, batch, item.quantity, reference_type, reference_id, note=note)
        released += item.quantity

    inventory_service.release(db, inventory, released)
    return released
