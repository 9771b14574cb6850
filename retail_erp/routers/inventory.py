from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from retail_erp.core.api_docs import error_responses
from retail_erp.core.config import settings
from retail_erp.core.deps import get_db
from retail_erp.core.money import to_money
from retail_erp.db.unit_of_work import atomic
from retail_erp.models.catalog import Product
from retail_erp.models.inventory import Inventory, PurchaseBatch, StockMovement, StockReservation
from retail_erp.schemas.common import build_pagination
from retail_erp.schemas.inventory import (
    AdjustOutIn,
    AllocateIn,
    AllocationOut,
    BatchConsumptionOut,
    BatchListOut,
    BatchOut,
    BatchStatus,
    LowStockListOut,
    LowStockOut,
    MovementType,
    ProductStockOut,
    ReconcileIn,
    ReconcileOut,
    ReconcileRowOut,
    ReservationActionIn,
    ReservationAllocationOut,
    ReservationOut,
    StockInIn,
    StockInOut,
    StockLevelOut,
    StockMovementListOut,
    StockMovementOut,
    TransferIn,
    TransferOut,
)
from retail_erp.services import (
    batch_service,
    catalog_service,
    inventory_service,
    reservation_service,
    stock_service,
)
from retail_erp.services.allocation_service import AllocationResult

router = APIRouter(prefix="/inventory", tags=["inventory"])


def _allocation_out(result: AllocationResult) -> AllocationOut:
    return AllocationOut(
        product_id=result.product_id,
        warehouse_id=result.warehouse_id,
        quantity=result.quantity,
        batch_consumptions=[
            BatchConsumptionOut(
                batch_id=item.batch_id,
                quantity=item.quantity,
                unit_cost=float(item.unit_cost),
            )
            for item in result.batch_consumptions
        ],
        total_cost=float(result.total_cost),
        weighted_unit_cost=float(result.weighted_unit_cost),
    )


def _batch_out(batch: PurchaseBatch) -> BatchOut:
    return BatchOut(
        id=batch.id,
        product_id=batch.product_id,
        warehouse_id=batch.warehouse_id,
        purchase_id=batch.purchase_id,
        batch_code=batch.batch_code,
        purchase_date=batch.purchase_date,
        expiry_date=batch.expiry_date,
        quantity_purchased=batch.quantity_purchased,
        quantity_available=batch.quantity_available,
        purchase_price=float(to_money(batch.purchase_price)),
        distribution_price=float(to_money(batch.distribution_price)),
        status=batch.status,
    )


def _stock_level_out(row: Inventory) -> StockLevelOut:
    return StockLevelOut(
        product_id=row.product_id,
        warehouse_id=row.warehouse_id,
        available_stock=row.available_stock,
        reserved_stock=row.reserved_stock,
        last_movement_at=row.last_movement_at,
    )


def _movement_out(row: StockMovement) -> StockMovementOut:
    return StockMovementOut(
        id=row.id,
        product_id=row.product_id,
        warehouse_id=row.warehouse_id,
        purchase_batch_id=row.purchase_batch_id,
        type=row.type,
        quantity=row.quantity,
        unit_cost=float(to_money(row.unit_cost)) if row.unit_cost is not None else None,
        reference_type=row.reference_type,
        reference_id=row.reference_id,
        note=row.note,
        moved_at=row.moved_at,
    )


def _reservation_out(db: Session, reservation: StockReservation) -> ReservationOut:
    return ReservationOut(
        id=reservation.id,
        code=reservation.code,
        product_id=reservation.product_id,
        warehouse_id=reservation.warehouse_id,
        quantity=reservation.quantity,
        status=reservation.status,
        reference_id=reservation.reference_id,
        note=reservation.note,
        batch_consumptions=[
            BatchConsumptionOut(
                batch_id=row.purchase_batch_id,
                quantity=row.quantity,
                unit_cost=float(to_money(row.unit_cost)),
            )
            for row in reservation_service.get_reservation_batches(db, reservation.id)
        ],
        created_at=reservation.created_at,
        closed_at=reservation.closed_at,
    )


@router.post(
    "/allocate",
    response_model=ReservationAllocationOut,
    summary="Reserve stock FIFO",
    responses=error_responses(404, 422, 500),
)
def allocate_stock(payload: AllocateIn, db: Session = Depends(get_db)):
    with atomic(db):
        catalog_service.get_active_product(db, payload.product_id)
        catalog_service.get_warehouse(db, payload.warehouse_id)
        reservation, result = reservation_service.create_reservation(
            db,
            payload.product_id,
            payload.warehouse_id,
            payload.quantity,
            reference_id=payload.reference_id,
            note=payload.note,
        )
        out = ReservationAllocationOut(
            reservation_id=reservation.id,
            reservation_code=reservation.code,
            status=reservation.status,
            **_allocation_out(result).model_dump(),
        )
    return out


@router.get(
    "/reservations/{reservation_id}",
    response_model=ReservationOut,
    summary="Get a stock reservation",
    responses=error_responses(404, 500),
)
def get_reservation(reservation_id: str, db: Session = Depends(get_db)):
    reservation = reservation_service.get_reservation(db, reservation_id)
    return _reservation_out(db, reservation)


@router.post(
    "/reservations/{reservation_id}/release",
    response_model=ReservationOut,
    summary="Release a held reservation back to available",
    responses=error_responses(404, 409, 422, 500),
)
def release_reservation(reservation_id: str, payload: ReservationActionIn, db: Session = Depends(get_db)):
    with atomic(db):
        reservation = reservation_service.release_reservation(db, reservation_id, note=payload.note)
        out = _reservation_out(db, reservation)
    return out


@router.post(
    "/reservations/{reservation_id}/settle",
    response_model=ReservationOut,
    summary="Settle a held reservation as shipped out",
    responses=error_responses(404, 409, 422, 500),
)
def settle_reservation(reservation_id: str, payload: ReservationActionIn, db: Session = Depends(get_db)):
    with atomic(db):
        reservation = reservation_service.settle_reservation(db, reservation_id, note=payload.note)
        out = _reservation_out(db, reservation)
    return out


@router.post(
    "/stock-in",
    response_model=StockInOut,
    summary="Receive stock into a new batch",
    responses=error_responses(404, 422, 500),
)
def stock_in(payload: StockInIn, db: Session = Depends(get_db)):
    with atomic(db):
        result = stock_service.stock_in(
            db,
            payload.product_id,
            payload.warehouse_id,
            payload.quantity,
            payload.unit_cost,
            payload.distribution_price,
            expiry_date=payload.expiry_date,
            purchase_date=payload.purchase_date,
            note=payload.note,
        )
        out = StockInOut(
            batch=_batch_out(result.batch),
            available_stock=result.inventory.available_stock,
            reserved_stock=result.inventory.reserved_stock,
        )
    return out


@router.post(
    "/adjust-out",
    response_model=AllocationOut,
    summary="Write stock off FIFO",
    responses=error_responses(404, 422, 500),
)
def adjust_out(payload: AdjustOutIn, db: Session = Depends(get_db)):
    with atomic(db):
        result = stock_service.adjust_out(
            db,
            payload.product_id,
            payload.warehouse_id,
            payload.quantity,
            payload.reason,
        )
    return _allocation_out(result)


@router.post(
    "/transfers",
    response_model=TransferOut,
    summary="Transfer stock between warehouses",
    responses=error_responses(404, 422, 500),
)
def transfer_stock(payload: TransferIn, db: Session = Depends(get_db)):
    with atomic(db):
        result = stock_service.transfer_stock(
            db,
            payload.product_id,
            payload.from_warehouse_id,
            payload.to_warehouse_id,
            payload.quantity,
            note=payload.note,
        )
    return TransferOut(
        transfer_id=result.transfer_id,
        product_id=result.product_id,
        from_warehouse_id=result.from_warehouse_id,
        to_warehouse_id=result.to_warehouse_id,
        quantity=result.quantity,
        destination_batch_ids=result.destination_batch_ids,
        weighted_unit_cost=float(result.allocation.weighted_unit_cost) if result.allocation else 0.0,
    )


@router.get(
    "/stock/{product_id}",
    response_model=ProductStockOut,
    summary="Stock levels per warehouse",
    responses=error_responses(404, 422, 500),
)
def get_product_stock(product_id: str, db: Session = Depends(get_db)):
    catalog_service.get_product(db, product_id)
    rows = inventory_service.list_product_inventory(db, product_id)
    return ProductStockOut(
        product_id=product_id,
        total_available=sum(row.available_stock for row in rows),
        total_reserved=sum(row.reserved_stock for row in rows),
        warehouses=[_stock_level_out(row) for row in rows],
    )


@router.get(
    "/low-stock",
    response_model=LowStockListOut,
    summary="List ledger rows at or below the low-stock threshold",
    responses=error_responses(422, 500),
)
def list_low_stock(
    threshold: int | None = Query(
        default=None,
        ge=0,
        description="Optional threshold override. Defaults to the configured low-stock threshold.",
    ),
    warehouse_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    limit_threshold = settings.low_stock_default_threshold if threshold is None else threshold
    stmt = (
        select(Inventory, Product.sku, Product.name)
        .join(Product, Product.id == Inventory.product_id)
        .where(Product.is_active.is_(True), Inventory.available_stock <= limit_threshold)
    )
    if warehouse_id:
        stmt = stmt.where(Inventory.warehouse_id == warehouse_id)
    rows = db.execute(stmt.order_by(Inventory.available_stock.asc(), Product.sku, Inventory.warehouse_id)).all()

    result = [
        LowStockOut(
            product_id=row.product_id,
            sku=sku,
            product_name=name,
            warehouse_id=row.warehouse_id,
            available_stock=row.available_stock,
            reserved_stock=row.reserved_stock,
            threshold=limit_threshold,
        )
        for row, sku, name in rows
    ]
    total = len(result)
    page_items = result[offset : offset + limit]
    return LowStockListOut(
        items=page_items,
        pagination=build_pagination(total=total, limit=limit, offset=offset, count=len(page_items)),
    )


@router.get(
    "/batches",
    response_model=BatchListOut,
    summary="List purchase batches in FIFO order",
    responses=error_responses(422, 500),
)
def list_batches(
    product_id: str = Query(...),
    warehouse_id: str = Query(...),
    status: BatchStatus | None = Query(default=None, description="Defaults to active batches with stock."),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    if status is None:
        rows = batch_service.list_active_batches(db, product_id, warehouse_id)[offset:offset + limit]
    else:
        rows = batch_service.list_batches(
            db,
            product_id=product_id,
            warehouse_id=warehouse_id,
            status=status,
            limit=limit,
            offset=offset,
        )
    return BatchListOut(items=[_batch_out(row) for row in rows])


@router.get(
    "/movements",
    response_model=StockMovementListOut,
    summary="List stock movements",
    responses=error_responses(422, 500),
)
def list_movements(
    product_id: str | None = Query(default=None),
    warehouse_id: str | None = Query(default=None),
    type: MovementType | None = Query(default=None),
    reference_type: str | None = Query(default=None),
    reference_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    rows, total_count = stock_service.list_movements(
        db,
        product_id=product_id,
        warehouse_id=warehouse_id,
        movement_type=type,
        reference_type=reference_type,
        reference_id=reference_id,
        limit=limit,
        offset=offset,
    )
    items = [_movement_out(row) for row in rows]
    return StockMovementListOut(
        items=items,
        pagination=build_pagination(total=total_count, limit=limit, offset=offset, count=len(items)),
    )


@router.post(
    "/reconcile",
    response_model=ReconcileOut,
    summary="Compare ledger with batches and optionally fix drift",
    responses=error_responses(422, 500),
)
def reconcile(payload: ReconcileIn, db: Session = Depends(get_db)):
    with atomic(db):
        rows = stock_service.reconcile_inventory(
            db,
            product_id=payload.product_id,
            warehouse_id=payload.warehouse_id,
            fix=payload.fix,
        )
    items = [
        ReconcileRowOut(
            product_id=row.product_id,
            warehouse_id=row.warehouse_id,
            ledger_available=row.ledger_available,
            ledger_reserved=row.ledger_reserved,
            expected_available=row.expected_available,
            expected_reserved=row.expected_reserved,
            in_sync=row.in_sync,
            fixed=row.fixed,
        )
        for row in rows
    ]
    return ReconcileOut(
        checked=len(items),
        drifted=sum(1 for item in items if not item.in_sync),
        fixed=sum(1 for item in items if item.fixed),
        items=items,
    )
