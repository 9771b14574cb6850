import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from retail_erp.core.config import settings
from retail_erp.core.errors import (
    DomainValidationError,
    InventoryIntegrityError,
    NotFoundError,
    OrderNotCancellableError,
    OrderNotConfirmableError,
    OrderStateError,
)
from retail_erp.core.id_utils import generate_document_code, new_id
from retail_erp.core.money import ZERO_MONEY, margin_pct, to_money, weighted_average
from retail_erp.core.observability import log_event
from retail_erp.models.inventory import Inventory
from retail_erp.models.order import (
    ORDER_CANCELLED,
    ORDER_DELIVERED,
    ORDER_PAID,
    ORDER_PENDING,
    ORDER_PREPARING,
    ORDER_SHIPPED,
    Order,
    OrderAllocation,
    OrderItem,
    OrderStatusHistory,
)
from retail_erp.models.sales import Payment, Sale, SaleItem
from retail_erp.services import allocation_service, catalog_service, inventory_service
from retail_erp.services.allocation_service import BatchConsumption
from retail_erp.services.audit_service import log_audit_event

logger = logging.getLogger(__name__)

ALLOWED_ORDER_STATUSES = {
    ORDER_PENDING,
    ORDER_PAID,
    ORDER_PREPARING,
    ORDER_SHIPPED,
    ORDER_DELIVERED,
    ORDER_CANCELLED,
}

# Post-payment fulfillment only moves forward and never touches stock.
FULFILLMENT_TRANSITIONS: dict[str, set[str]] = {
    ORDER_PAID: {ORDER_PREPARING},
    ORDER_PREPARING: {ORDER_SHIPPED},
    ORDER_SHIPPED: {ORDER_DELIVERED},
    ORDER_DELIVERED: set(),
}


@dataclass
class OrderLine:
    item: OrderItem
    allocations: list[OrderAllocation]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_order(db: Session, order_id: str) -> Order:
    order = db.get(Order, order_id)
    if not order:
        raise NotFoundError(f"Order not found: {order_id}")
    return order


def _lock_order(db: Session, order_id: str) -> Order:
    order = db.execute(
        select(Order).where(Order.id == order_id).with_for_update()
    ).scalar_one_or_none()
    if not order:
        raise NotFoundError(f"Order not found: {order_id}")
    return order


def get_order_items(db: Session, order_id: str) -> list[OrderItem]:
    return list(
        db.execute(
            select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.product_id)
        ).scalars().all()
    )


def get_order_lines(db: Session, order_id: str) -> list[OrderLine]:
    items = get_order_items(db, order_id)
    if not items:
        return []
    rows = db.execute(
        select(OrderAllocation)
        .where(OrderAllocation.order_item_id.in_([item.id for item in items]))
        .order_by(OrderAllocation.order_item_id, OrderAllocation.sequence)
    ).scalars().all()
    by_item: dict[str, list[OrderAllocation]] = defaultdict(list)
    for row in rows:
        by_item[row.order_item_id].append(row)
    return [OrderLine(item=item, allocations=by_item.get(item.id, [])) for item in items]


def get_status_history(db: Session, order_id: str) -> list[OrderStatusHistory]:
    return list(
        db.execute(
            select(OrderStatusHistory)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.created_at.asc())
        ).scalars().all()
    )


def list_orders(
    db: Session,
    *,
    status: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Order], int]:
    if status and status not in ALLOWED_ORDER_STATUSES:
        allowed = ", ".join(sorted(ALLOWED_ORDER_STATUSES))
        raise DomainValidationError(f"Invalid order status. Allowed: {allowed}")
    if start_date and end_date and end_date < start_date:
        raise DomainValidationError("end_date cannot be before start_date")

    count_stmt = select(func.count(Order.id))
    data_stmt = select(Order)
    if status:
        count_stmt = count_stmt.where(Order.status == status)
        data_stmt = data_stmt.where(Order.status == status)
    if start_date:
        count_stmt = count_stmt.where(func.date(Order.created_at) >= start_date)
        data_stmt = data_stmt.where(func.date(Order.created_at) >= start_date)
    if end_date:
        count_stmt = count_stmt.where(func.date(Order.created_at) <= end_date)
        data_stmt = data_stmt.where(func.date(Order.created_at) <= end_date)

    total_count = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        data_stmt.order_by(Order.created_at.desc(), Order.id).offset(offset).limit(limit)
    ).scalars().all()
    return list(rows), total_count


def _record_transition(db: Session, order: Order, to_status: str, note: str | None) -> None:
    db.add(
        OrderStatusHistory(
            id=new_id(),
            order_id=order.id,
            from_status=order.status,
            to_status=to_status,
            note=note[:255] if note else None,
        )
    )
    order.status = to_status


def _lock_order_inventory(db: Session, lines: list[OrderLine]) -> dict[tuple[str, str], Inventory | None]:
    return inventory_service.lock_inventory_rows(
        db, [(line.item.product_id, line.item.warehouse_id) for line in lines]
    )


def confirm_order(
    db: Session,
    order_id: str,
    payment_method: str | None = None,
    transaction_ref: str | None = None,
) -> Sale:
    """
    Convert a paid pending order into a sale.

    Uses the batch consumptions recorded at checkout, so batches are not walked
    again and no stock movement is written; reserved stock is settled per line.
    A second call on the same order raises OrderNotConfirmableError.
    """
    order = _lock_order(db, order_id)
    if order.status != ORDER_PENDING:
        raise OrderNotConfirmableError(
            f"Order {order.code} cannot be confirmed from status '{order.status}'",
            order_id=order.id,
            status=order.status,
        )

    lines = get_order_lines(db, order.id)
    if not lines:
        raise DomainValidationError("Order has no items", details=[{"order_id": order.id}])
    locked_rows = _lock_order_inventory(db, lines)

    method = payment_method or settings.default_payment_method
    sale = Sale(
        id=new_id(),
        code=generate_document_code("SAL"),
        order_id=order.id,
        customer_name=order.customer_name,
        customer_doc_type=order.customer_doc_type,
        customer_doc_number=order.customer_doc_number,
        warehouse_id=order.warehouse_id,
        currency=order.currency,
        subtotal=to_money(order.subtotal),
        tax=to_money(order.tax),
        total=to_money(order.total),
        cost_total=ZERO_MONEY,
        margin_total=ZERO_MONEY,
        payment_status="paid",
    )
    db.add(sale)

    cost_total = ZERO_MONEY
    flagged_lines = 0
    for line in lines:
        item = line.item
        pairs = [(allocation.quantity, Decimal(str(allocation.unit_cost))) for allocation in line.allocations]
        if not pairs:
            raise InventoryIntegrityError(
                f"Order line for product {item.product_id} has no recorded batch allocations",
                details=[{"order_id": order.id, "order_item_id": item.id}],
            )
        unit_cost = weighted_average(pairs)
        line_cost = to_money(sum((Decimal(qty) * cost for qty, cost in pairs), ZERO_MONEY))
        unit_price = to_money(item.unit_price)
        line_margin = margin_pct(unit_price, unit_cost)

        product = catalog_service.get_product(db, item.product_id)
        margins = catalog_service.resolve_category_margins(db, product.category_id)
        below_min = margins.min_margin_pct is not None and line_margin < margins.min_margin_pct
        if below_min:
            flagged_lines += 1
            log_event(
                logger,
                "sale_below_min_margin",
                level=logging.WARNING,
                order_id=order.id,
                product_id=item.product_id,
                margin_pct=str(line_margin),
                min_margin_pct=str(margins.min_margin_pct),
            )

        db.add(
            SaleItem(
                id=new_id(),
                sale_id=sale.id,
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price=unit_price,
                line_total=to_money(item.line_total),
                unit_cost=unit_cost,
                cost_total=line_cost,
                margin_pct=line_margin,
                below_min_margin=below_min,
            )
        )
        cost_total += line_cost

        inventory = locked_rows[(item.product_id, item.warehouse_id)]
        if inventory is None:
            raise InventoryIntegrityError(
                f"No inventory row for product {item.product_id} in warehouse {item.warehouse_id}",
                details=[{"order_id": order.id, "product_id": item.product_id}],
            )
        inventory_service.settle_reserved(db, inventory, item.quantity)

    sale.cost_total = to_money(cost_total)
    sale.margin_total = to_money(sale.subtotal - cost_total)

    db.add(
        Payment(
            id=new_id(),
            sale_id=sale.id,
            order_id=order.id,
            amount=sale.total,
            currency=order.currency,
            method=method,
            reference=transaction_ref,
            status="approved",
        )
    )

    now = datetime.now(timezone.utc)
    _record_transition(db, order, ORDER_PAID, f"Payment confirmed ({method})")
    order.payment_method = method
    order.payment_reference = transaction_ref
    order.sale_id = sale.id
    order.confirmed_at = now

    log_audit_event(
        db,
        action="order.confirm",
        target_type="order",
        target_id=order.id,
        metadata_json={
            "sale_id": sale.id,
            "sale_code": sale.code,
            "payment_method": method,
            "transaction_ref": transaction_ref,
            "items_count": len(lines),
            "below_min_margin_lines": flagged_lines,
        },
    )
    log_event(
        logger,
        "order_confirmed",
        order_id=order.id,
        sale_id=sale.id,
        total=str(sale.total),
        cost_total=str(sale.cost_total),
    )
    db.flush()
    return sale


def _release_order(db: Session, order: Order, lines: list[OrderLine], reference_note: str | None) -> None:
    _lock_order_inventory(db, lines)
    for line in lines:
        consumptions = [
            BatchConsumption(
                batch_id=allocation.purchase_batch_id,
                quantity=allocation.quantity,
                unit_cost=to_money(allocation.unit_cost),
            )
            for allocation in line.allocations
        ]
        allocation_service.release_allocation(
            db,
            line.item.product_id,
            line.item.warehouse_id,
            consumptions,
            reference_type="order_cancel",
            reference_id=order.id,
            note=reference_note,
        )


def cancel_order(db: Session, order_id: str, reason: str | None = None) -> Order:
    """
    Cancel a pending order. Batches are restored in reverse allocation order and the
    reservation moves back to available. Paid and already cancelled orders are refused.
    """
    order = _lock_order(db, order_id)
    if order.status != ORDER_PENDING:
        raise OrderNotCancellableError(
            f"Order {order.code} cannot be cancelled from status '{order.status}'",
            order_id=order.id,
            status=order.status,
        )

    lines = get_order_lines(db, order.id)
    _release_order(db, order, lines, reason)

    _record_transition(db, order, ORDER_CANCELLED, reason or "Cancelled")
    order.cancelled_at = datetime.now(timezone.utc)
    log_audit_event(
        db,
        action="order.cancel",
        target_type="order",
        target_id=order.id,
        metadata_json={"reason": reason, "items_count": len(lines)},
    )
    log_event(logger, "order_cancelled", order_id=order.id, reason=reason)
    db.flush()
    return order


def _auto_cancel_note(timeout_minutes: int) -> str:
    units = "minute" if timeout_minutes == 1 else "minutes"
    return f"Auto-cancelled after {timeout_minutes} {units} without payment."


def expire_pending_orders(
    db: Session,
    timeout_minutes: int | None = None,
    *,
    now: datetime | None = None,
) -> list[str]:
    """Cancel pending orders older than the timeout. Returns the expired order ids."""
    minutes = timeout_minutes if timeout_minutes and timeout_minutes > 0 else settings.orders_pending_timeout_minutes
    cutoff_at = (now or datetime.now(timezone.utc)) - timedelta(minutes=minutes)
    pending_orders = db.execute(
        select(Order).where(Order.status == ORDER_PENDING).order_by(Order.created_at.asc(), Order.id)
    ).scalars().all()

    expired_ids: list[str] = []
    for order in pending_orders:
        if _as_utc(order.created_at) > cutoff_at:
            continue
        locked = _lock_order(db, order.id)
        if locked.status != ORDER_PENDING:
            continue
        lines = get_order_lines(db, locked.id)
        note = _auto_cancel_note(minutes)
        _release_order(db, locked, lines, note)
        _record_transition(db, locked, ORDER_CANCELLED, note)
        locked.cancelled_at = datetime.now(timezone.utc)
        log_audit_event(
            db,
            action="order.auto_cancel",
            target_type="order",
            target_id=locked.id,
            metadata_json={
                "from_status": ORDER_PENDING,
                "to_status": ORDER_CANCELLED,
                "timeout_minutes": minutes,
                "cutoff_at": cutoff_at.isoformat(),
            },
        )
        expired_ids.append(locked.id)

    if expired_ids:
        log_event(logger, "orders_expired", count=len(expired_ids), timeout_minutes=minutes)
    db.flush()
    return expired_ids


def update_fulfillment_status(db: Session, order_id: str, status: str, note: str | None = None) -> Order:
    next_status = status.strip().lower()
    if next_status not in ALLOWED_ORDER_STATUSES:
        allowed = ", ".join(sorted(ALLOWED_ORDER_STATUSES))
        raise DomainValidationError(f"Invalid order status. Allowed: {allowed}")

    order = _lock_order(db, order_id)
    allowed_next = FULFILLMENT_TRANSITIONS.get(order.status, set())
    if next_status not in allowed_next:
        raise OrderStateError(
            f"Cannot transition order from '{order.status}' to '{next_status}'",
            order_id=order.id,
            status=order.status,
        )

    from_status = order.status
    _record_transition(db, order, next_status, note)
    log_audit_event(
        db,
        action="order.status.update",
        target_type="order",
        target_id=order.id,
        metadata_json={"from_status": from_status, "to_status": next_status},
    )
    db.flush()
    return order
