from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from retail_erp.core.api_docs import error_responses
from retail_erp.core.deps import get_db
from retail_erp.core.errors import DomainValidationError, NotFoundError
from retail_erp.core.money import to_money
from retail_erp.models.sales import Payment, Sale, SaleItem
from retail_erp.schemas.common import build_pagination
from retail_erp.schemas.sales import PaymentOut, SaleDetailOut, SaleItemOut, SaleListOut, SaleOut

router = APIRouter(prefix="/sales", tags=["sales"])


def _sale_fields(sale: Sale) -> dict:
    return {
        "id": sale.id,
        "code": sale.code,
        "order_id": sale.order_id,
        "customer_name": sale.customer_name,
        "warehouse_id": sale.warehouse_id,
        "currency": sale.currency,
        "subtotal": float(to_money(sale.subtotal)),
        "tax": float(to_money(sale.tax)),
        "total": float(to_money(sale.total)),
        "cost_total": float(to_money(sale.cost_total)),
        "margin_total": float(to_money(sale.margin_total)),
        "payment_status": sale.payment_status,
        "created_at": sale.created_at,
    }


def sale_detail_out(db: Session, sale: Sale) -> SaleDetailOut:
    items = db.execute(
        select(SaleItem).where(SaleItem.sale_id == sale.id).order_by(SaleItem.product_id)
    ).scalars().all()
    payments = db.execute(
        select(Payment).where(Payment.sale_id == sale.id).order_by(Payment.paid_at)
    ).scalars().all()
    return SaleDetailOut(
        **_sale_fields(sale),
        items=[
            SaleItemOut(
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price=float(to_money(item.unit_price)),
                line_total=float(to_money(item.line_total)),
                unit_cost=float(to_money(item.unit_cost)),
                cost_total=float(to_money(item.cost_total)),
                margin_pct=float(to_money(item.margin_pct)),
                below_min_margin=item.below_min_margin,
            )
            for item in items
        ],
        payments=[
            PaymentOut(
                id=payment.id,
                amount=float(to_money(payment.amount)),
                currency=payment.currency,
                method=payment.method,
                reference=payment.reference,
                status=payment.status,
                paid_at=payment.paid_at,
            )
            for payment in payments
        ],
    )


@router.get(
    "",
    response_model=SaleListOut,
    summary="List sales",
    responses=error_responses(422, 500),
)
def list_sales(
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    if start_date and end_date and end_date < start_date:
        raise DomainValidationError("end_date cannot be before start_date")

    count_stmt = select(func.count(Sale.id))
    data_stmt = select(Sale)
    if start_date:
        count_stmt = count_stmt.where(func.date(Sale.created_at) >= start_date)
        data_stmt = data_stmt.where(func.date(Sale.created_at) >= start_date)
    if end_date:
        count_stmt = count_stmt.where(func.date(Sale.created_at) <= end_date)
        data_stmt = data_stmt.where(func.date(Sale.created_at) <= end_date)

    total_count = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        data_stmt.order_by(Sale.created_at.desc(), Sale.id).offset(offset).limit(limit)
    ).scalars().all()
    items = [SaleOut(**_sale_fields(row)) for row in rows]
    return SaleListOut(
        pagination=build_pagination(total=total_count, limit=limit, offset=offset, count=len(items)),
        start_date=start_date,
        end_date=end_date,
        items=items,
    )


@router.get(
    "/{sale_id}",
    response_model=SaleDetailOut,
    summary="Get sale with cost and margin per line",
    responses=error_responses(404, 422, 500),
)
def get_sale(sale_id: str, db: Session = Depends(get_db)):
    sale = db.get(Sale, sale_id)
    if not sale:
        raise NotFoundError(f"Sale not found: {sale_id}")
    return sale_detail_out(db, sale)
