from decimal import Decimal

from sqlalchemy.orm import Session

from retail_erp.core.errors import DomainValidationError
from retail_erp.core.id_utils import new_id
from retail_erp.core.money import to_money
from retail_erp.models.inventory import MOVEMENT_IN, MOVEMENT_OUT, StockMovement

REFERENCE_TYPES = {
    "purchase",
    "purchase_void",
    "order",
    "order_cancel",
    "adjustment",
    "transfer",
    "manual",
    "reservation",
    "reservation_release",
}


def record_movement(
    db: Session,
    *,
    product_id: str,
    warehouse_id: str,
    movement_type: str,
    quantity: int,
    reference_type: str,
    purchase_batch_id: str | None = None,
    unit_cost: Decimal | None = None,
    reference_id: str | None = None,
    note: str | None = None,
) -> StockMovement:
    """Append one movement row. Rows are never updated or deleted afterwards."""
    if movement_type not in {MOVEMENT_IN, MOVEMENT_OUT}:
        raise DomainValidationError(f"Invalid movement type: {movement_type}")
    if quantity <= 0:
        raise DomainValidationError("Movement quantity must be positive")
    if reference_type not in REFERENCE_TYPES:
        raise DomainValidationError(f"Invalid movement reference type: {reference_type}")

    movement = StockMovement(
        id=new_id(),
        product_id=product_id,
        warehouse_id=warehouse_id,
        purchase_batch_id=purchase_batch_id,
        type=movement_type,
        quantity=quantity,
        unit_cost=to_money(unit_cost) if unit_cost is not None else None,
        reference_type=reference_type,
        reference_id=reference_id,
        note=note[:255] if note else None,
    )
    db.add(movement)
    return movement
