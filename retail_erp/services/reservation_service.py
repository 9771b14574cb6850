import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from retail_erp.core.errors import InventoryInconsistencyError, NotFoundError, ReservationStateError
from retail_erp.core.id_utils import generate_document_code, new_id
from retail_erp.core.money import to_money
from retail_erp.core.observability import log_event
from retail_erp.models.inventory import (
    RESERVATION_HELD,
    RESERVATION_RELEASED,
    RESERVATION_SETTLED,
    StockReservation,
    StockReservationBatch,
)
from retail_erp.services import allocation_service, inventory_service
from retail_erp.services.allocation_service import AllocationResult, BatchConsumption
from retail_erp.services.audit_service import log_audit_event

logger = logging.getLogger(__name__)


def get_reservation(db: Session, reservation_id: str) -> StockReservation:
    reservation = db.get(StockReservation, reservation_id)
    if not reservation:
        raise NotFoundError(f"Reservation not found: {reservation_id}")
    return reservation


def _lock_reservation(db: Session, reservation_id: str) -> StockReservation:
    reservation = db.execute(
        select(StockReservation).where(StockReservation.id == reservation_id).with_for_update()
    ).scalar_one_or_none()
    if not reservation:
        raise NotFoundError(f"Reservation not found: {reservation_id}")
    return reservation


def get_reservation_batches(db: Session, reservation_id: str) -> list[StockReservationBatch]:
    return list(
        db.execute(
            select(StockReservationBatch)
            .where(StockReservationBatch.reservation_id == reservation_id)
            .order_by(StockReservationBatch.sequence)
        ).scalars().all()
    )


def create_reservation(
    db: Session,
    product_id: str,
    warehouse_id: str,
    quantity: int,
    *,
    reference_id: str | None = None,
    note: str | None = None,
) -> tuple[StockReservation, AllocationResult]:
    """
    Hold stock outside an order.

    Allocates FIFO like checkout does and records which batch units back the hold, so
    it can later be released in reverse order or settled. Held reservations count
    towards the expected reserved stock when the ledger is reconciled.
    """
    reservation = StockReservation(
        id=new_id(),
        code=generate_document_code("RSV"),
        product_id=product_id,
        warehouse_id=warehouse_id,
        quantity=quantity,
        status=RESERVATION_HELD,
        reference_id=reference_id,
        note=note,
    )
    result = allocation_service.allocate(
        db,
        product_id,
        warehouse_id,
        quantity,
        reference_type="reservation",
        reference_id=reservation.id,
    )
    db.add(reservation)
    db.flush()

    for sequence, item in enumerate(result.batch_consumptions, start=1):
        db.add(
            StockReservationBatch(
                id=new_id(),
                reservation_id=reservation.id,
                purchase_batch_id=item.batch_id,
                sequence=sequence,
                quantity=item.quantity,
                unit_cost=item.unit_cost,
            )
        )

    log_audit_event(
        db,
        action="reservation.create",
        target_type="stock_reservation",
        target_id=reservation.id,
        metadata_json={
            "product_id": product_id,
            "warehouse_id": warehouse_id,
            "quantity": quantity,
            "reference_id": reference_id,
        },
    )
    db.flush()
    return reservation, result


def _require_held(reservation: StockReservation, action: str) -> None:
    if reservation.status != RESERVATION_HELD:
        raise ReservationStateError(
            f"Reservation {reservation.code} cannot be {action} from status '{reservation.status}'",
            reservation_id=reservation.id,
            status=reservation.status,
        )


def release_reservation(db: Session, reservation_id: str, note: str | None = None) -> StockReservation:
    """Give held units back: batches are restored in reverse order and reserved moves to available."""
    reservation = _lock_reservation(db, reservation_id)
    _require_held(reservation, "released")

    consumptions = [
        BatchConsumption(batch_id=row.purchase_batch_id, quantity=row.quantity, unit_cost=to_money(row.unit_cost))
        for row in get_reservation_batches(db, reservation.id)
    ]
    allocation_service.release_allocation(
        db,
        reservation.product_id,
        reservation.warehouse_id,
        consumptions,
        reference_type="reservation_release",
        reference_id=reservation.id,
        note=note,
    )
    reservation.status = RESERVATION_RELEASED
    reservation.closed_at = datetime.now(timezone.utc)
    log_audit_event(
        db,
        action="reservation.release",
        target_type="stock_reservation",
        target_id=reservation.id,
        metadata_json={"quantity": reservation.quantity, "note": note},
    )
    log_event(logger, "reservation_released", reservation_id=reservation.id, quantity=reservation.quantity)
    db.flush()
    return reservation


def settle_reservation(db: Session, reservation_id: str, note: str | None = None) -> StockReservation:
    """
    Held units leave the warehouse for good. Only the reserved counter drops; the
    out movements were written when the hold was taken.
    """
    reservation = _lock_reservation(db, reservation_id)
    _require_held(reservation, "settled")

    inventory = inventory_service.lock_inventory(db, reservation.product_id, reservation.warehouse_id)
    if inventory is None:
        raise InventoryInconsistencyError(
            product_id=reservation.product_id,
            warehouse_id=reservation.warehouse_id,
            ledger_available=0,
            batches_available=0,
            requested=reservation.quantity,
        )
    inventory_service.settle_reserved(db, inventory, reservation.quantity)

    reservation.status = RESERVATION_SETTLED
    reservation.closed_at = datetime.now(timezone.utc)
    log_audit_event(
        db,
        action="reservation.settle",
        target_type="stock_reservation",
        target_id=reservation.id,
        metadata_json={"quantity": reservation.quantity, "note": note},
    )
    log_event(logger, "reservation_settled", reservation_id=reservation.id, quantity=reservation.quantity)
    db.flush()
    return reservation
