from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from retail_erp.core.errors import InsufficientStockError, InventoryIntegrityError, InventoryLockError
from retail_erp.core.id_utils import new_id
from retail_erp.db.unit_of_work import locked_inventory_keys
from retail_erp.models.inventory import Inventory


def get_inventory(db: Session, product_id: str, warehouse_id: str) -> Inventory | None:
    """Unlocked read. Use only for display and soft checks."""
    return db.execute(
        select(Inventory).where(
            Inventory.product_id == product_id,
            Inventory.warehouse_id == warehouse_id,
        )
    ).scalar_one_or_none()


def get_available_stock(db: Session, product_id: str, warehouse_id: str) -> int:
    inventory = get_inventory(db, product_id, warehouse_id)
    return inventory.available_stock if inventory else 0


def list_product_inventory(db: Session, product_id: str) -> list[Inventory]:
    return list(
        db.execute(
            select(Inventory).where(Inventory.product_id == product_id).order_by(Inventory.warehouse_id)
        ).scalars().all()
    )


def lock_inventory(
    db: Session,
    product_id: str,
    warehouse_id: str,
    *,
    create: bool = False,
) -> Inventory | None:
    """
    Take the row lock for one (product, warehouse) ledger row.

    Issues SELECT ... FOR UPDATE and records the key in the session's lock registry,
    which ledger mutations check through require_lock(). With create=True a missing
    row is inserted (zero stock) and flushed so later reads in the transaction see it.
    """
    inventory = db.execute(
        select(Inventory)
        .where(
            Inventory.product_id == product_id,
            Inventory.warehouse_id == warehouse_id,
        )
        .with_for_update()
    ).scalar_one_or_none()

    if inventory is None and create:
        inventory = Inventory(
            id=new_id(),
            product_id=product_id,
            warehouse_id=warehouse_id,
            available_stock=0,
            reserved_stock=0,
        )
        db.add(inventory)
        db.flush()

    locked_inventory_keys(db).add((product_id, warehouse_id))
    return inventory


def lock_inventory_rows(
    db: Session,
    keys: Iterable[tuple[str, str]],
    *,
    create: bool = False,
) -> dict[tuple[str, str], Inventory | None]:
    """Lock several ledger rows in sorted key order so concurrent callers cannot deadlock."""
    locked: dict[tuple[str, str], Inventory | None] = {}
    for product_id, warehouse_id in sorted(set(keys)):
        locked[(product_id, warehouse_id)] = lock_inventory(db, product_id, warehouse_id, create=create)
    return locked


def holds_lock(db: Session, product_id: str, warehouse_id: str) -> bool:
    return (product_id, warehouse_id) in locked_inventory_keys(db)


def require_lock(db: Session, product_id: str, warehouse_id: str) -> None:
    if not holds_lock(db, product_id, warehouse_id):
        raise InventoryLockError(
            f"Inventory row for product {product_id} in warehouse {warehouse_id} is not locked",
            details=[{"product_id": product_id, "warehouse_id": warehouse_id}],
        )


def _touch(inventory: Inventory) -> None:
    inventory.last_movement_at = datetime.now(timezone.utc)


def reserve(db: Session, inventory: Inventory, quantity: int) -> Inventory:
    """Move units from available to reserved."""
    require_lock(db, inventory.product_id, inventory.warehouse_id)
    if inventory.available_stock < quantity:
        raise InsufficientStockError(
            product_id=inventory.product_id,
            warehouse_id=inventory.warehouse_id,
            requested=quantity,
            available=inventory.available_stock,
        )
    inventory.available_stock -= quantity
    inventory.reserved_stock += quantity
    _touch(inventory)
    return inventory


def release(db: Session, inventory: Inventory, quantity: int) -> Inventory:
    """Move units from reserved back to available."""
    require_lock(db, inventory.product_id, inventory.warehouse_id)
    if inventory.reserved_stock < quantity:
        raise InventoryIntegrityError(
            "Cannot release more units than are reserved",
            details=[
                {
                    "product_id": inventory.product_id,
                    "warehouse_id": inventory.warehouse_id,
                    "requested": quantity,
                    "reserved": inventory.reserved_stock,
                }
            ],
        )
    inventory.reserved_stock -= quantity
    inventory.available_stock += quantity
    _touch(inventory)
    return inventory


def settle_reserved(db: Session, inventory: Inventory, quantity: int) -> Inventory:
    """Reserved units leave the warehouse for good. Available is untouched."""
    require_lock(db, inventory.product_id, inventory.warehouse_id)
    if inventory.reserved_stock < quantity:
        raise InventoryIntegrityError(
            "Cannot settle more units than are reserved",
            details=[
                {
                    "product_id": inventory.product_id,
                    "warehouse_id": inventory.warehouse_id,
                    "requested": quantity,
                    "reserved": inventory.reserved_stock,
                }
            ],
        )
    inventory.reserved_stock -= quantity
    _touch(inventory)
    return inventory


def add_available(db: Session, inventory: Inventory, quantity: int) -> Inventory:
    require_lock(db, inventory.product_id, inventory.warehouse_id)
    inventory.available_stock += quantity
    _touch(inventory)
    return inventory


def remove_available(db: Session, inventory: Inventory, quantity: int) -> Inventory:
    require_lock(db, inventory.product_id, inventory.warehouse_id)
    if inventory.available_stock < quantity:
        raise InsufficientStockError(
            product_id=inventory.product_id,
            warehouse_id=inventory.warehouse_id,
            requested=quantity,
            available=inventory.available_stock,
        )
    inventory.available_stock -= quantity
    _touch(inventory)
    return inventory


def overwrite_counts(db: Session, inventory: Inventory, *, available: int, reserved: int) -> Inventory:
    """Reconciliation only: rewrite both counters to values derived from the batch store."""
    require_lock(db, inventory.product_id, inventory.warehouse_id)
    if available < 0 or reserved < 0:
        raise InventoryIntegrityError(
            "Stock counters cannot be negative",
            details=[{"product_id": inventory.product_id, "available": available, "reserved": reserved}],
        )
    inventory.available_stock = available
    inventory.reserved_stock = reserved
    _touch(inventory)
    return inventory
