from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from retail_erp.core.api_docs import error_responses
from retail_erp.core.deps import get_db
from retail_erp.core.money import to_money
from retail_erp.db.unit_of_work import atomic
from retail_erp.models.order import Order
from retail_erp.routers.sales import sale_detail_out
from retail_erp.schemas.common import build_pagination
from retail_erp.schemas.order import (
    ExpirePendingIn,
    ExpirePendingOut,
    OrderAllocationOut,
    OrderCancelIn,
    OrderConfirmIn,
    OrderDetailOut,
    OrderItemOut,
    OrderListOut,
    OrderOut,
    OrderStatusHistoryOut,
    OrderStatusUpdateIn,
)
from retail_erp.schemas.sales import SaleDetailOut
from retail_erp.services import order_service

router = APIRouter(prefix="/orders", tags=["orders"])


def _order_fields(order: Order) -> dict:
    return {
        "id": order.id,
        "code": order.code,
        "status": order.status,
        "customer_name": order.customer_name,
        "customer_doc_type": order.customer_doc_type,
        "customer_doc_number": order.customer_doc_number,
        "customer_email": order.customer_email,
        "customer_phone": order.customer_phone,
        "shipping_address": order.shipping_address,
        "shipping_district": order.shipping_district,
        "shipping_city": order.shipping_city,
        "warehouse_id": order.warehouse_id,
        "currency": order.currency,
        "subtotal": float(to_money(order.subtotal)),
        "tax": float(to_money(order.tax)),
        "shipping_cost": float(to_money(order.shipping_cost)),
        "total": float(to_money(order.total)),
        "payment_method": order.payment_method,
        "payment_reference": order.payment_reference,
        "sale_id": order.sale_id,
        "note": order.note,
        "created_at": order.created_at,
        "confirmed_at": order.confirmed_at,
        "cancelled_at": order.cancelled_at,
    }


def _order_out(order: Order) -> OrderOut:
    return OrderOut(**_order_fields(order))


def order_detail_out(db: Session, order: Order) -> OrderDetailOut:
    lines = order_service.get_order_lines(db, order.id)
    history = order_service.get_status_history(db, order.id)
    return OrderDetailOut(
        **_order_fields(order),
        items=[
            OrderItemOut(
                id=line.item.id,
                product_id=line.item.product_id,
                warehouse_id=line.item.warehouse_id,
                quantity=line.item.quantity,
                unit_price=float(to_money(line.item.unit_price)),
                line_total=float(to_money(line.item.line_total)),
                unit_cost=float(to_money(line.item.unit_cost)),
                allocations=[
                    OrderAllocationOut(
                        purchase_batch_id=allocation.purchase_batch_id,
                        sequence=allocation.sequence,
                        quantity=allocation.quantity,
                        unit_cost=float(to_money(allocation.unit_cost)),
                    )
                    for allocation in line.allocations
                ],
            )
            for line in lines
        ],
        history=[
            OrderStatusHistoryOut(
                from_status=row.from_status,
                to_status=row.to_status,
                note=row.note,
                created_at=row.created_at,
            )
            for row in history
        ],
    )


@router.get(
    "",
    response_model=OrderListOut,
    summary="List orders",
    responses=error_responses(422, 500),
)
def list_orders(
    status: str | None = Query(default=None),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    normalized_status = status.strip().lower() if status and status.strip() else None
    rows, total_count = order_service.list_orders(
        db,
        status=normalized_status,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )
    items = [_order_out(row) for row in rows]
    return OrderListOut(
        pagination=build_pagination(total=total_count, limit=limit, offset=offset, count=len(items)),
        start_date=start_date,
        end_date=end_date,
        status=normalized_status,
        items=items,
    )


@router.post(
    "/expire-pending",
    response_model=ExpirePendingOut,
    summary="Cancel pending orders past the payment timeout",
    responses=error_responses(422, 500),
)
def expire_pending(payload: ExpirePendingIn, db: Session = Depends(get_db)):
    with atomic(db):
        expired_ids = order_service.expire_pending_orders(db, payload.timeout_minutes)
    return ExpirePendingOut(expired=len(expired_ids), order_ids=expired_ids)


@router.get(
    "/{order_id}",
    response_model=OrderDetailOut,
    summary="Get order with lines, batch allocations and history",
    responses=error_responses(404, 422, 500),
)
def get_order(order_id: str, db: Session = Depends(get_db)):
    order = order_service.get_order(db, order_id)
    return order_detail_out(db, order)


@router.post(
    "/{order_id}/confirm",
    response_model=SaleDetailOut,
    summary="Confirm payment and convert the order into a sale",
    responses=error_responses(404, 409, 422, 500),
)
def confirm_order(order_id: str, payload: OrderConfirmIn, db: Session = Depends(get_db)):
    with atomic(db):
        sale = order_service.confirm_order(
            db,
            order_id,
            payload.payment_method,
            payload.transaction_ref,
        )
    db.refresh(sale)
    return sale_detail_out(db, sale)


@router.post(
    "/{order_id}/cancel",
    response_model=OrderDetailOut,
    summary="Cancel a pending order and release its stock",
    responses=error_responses(404, 409, 422, 500),
)
def cancel_order(order_id: str, payload: OrderCancelIn, db: Session = Depends(get_db)):
    with atomic(db):
        order = order_service.cancel_order(db, order_id, payload.reason)
    db.refresh(order)
    return order_detail_out(db, order)


@router.patch(
    "/{order_id}/status",
    response_model=OrderOut,
    summary="Advance fulfillment status of a paid order",
    responses=error_responses(404, 409, 422, 500),
)
def update_order_status(order_id: str, payload: OrderStatusUpdateIn, db: Session = Depends(get_db)):
    with atomic(db):
        order = order_service.update_fulfillment_status(db, order_id, payload.status, payload.note)
    db.refresh(order)
    return _order_out(order)
