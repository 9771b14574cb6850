from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from retail_erp.core.api_docs import error_responses
from retail_erp.core.deps import get_db
from retail_erp.core.money import to_money
from retail_erp.db.unit_of_work import atomic
from retail_erp.models.purchase import Purchase
from retail_erp.schemas.purchase import PurchaseCreateIn, PurchaseDetailOut, PurchaseOut, PurchaseVoidIn
from retail_erp.services import purchase_service
from retail_erp.services.purchase_service import PurchaseData, PurchaseLine

router = APIRouter(prefix="/purchases", tags=["purchases"])


def _purchase_out(db: Session, purchase: Purchase) -> PurchaseOut:
    details = purchase_service.get_purchase_details(db, purchase.id)
    batches = purchase_service.get_purchase_batches(db, purchase.id)
    return PurchaseOut(
        id=purchase.id,
        supplier_name=purchase.supplier_name,
        supplier_doc_number=purchase.supplier_doc_number,
        warehouse_id=purchase.warehouse_id,
        series=purchase.series,
        number=purchase.number,
        purchase_date=purchase.purchase_date,
        currency=purchase.currency,
        subtotal=float(to_money(purchase.subtotal)),
        tax=float(to_money(purchase.tax)),
        total=float(to_money(purchase.total)),
        status=purchase.status,
        note=purchase.note,
        created_at=purchase.created_at,
        voided_at=purchase.voided_at,
        details=[
            PurchaseDetailOut(
                product_id=detail.product_id,
                quantity=detail.quantity,
                unit_cost=float(to_money(detail.unit_cost)),
                distribution_price=float(to_money(detail.distribution_price)),
                line_total=float(to_money(detail.line_total)),
                expiry_date=detail.expiry_date,
            )
            for detail in details
        ],
        batch_ids=[batch.id for batch in batches],
    )


@router.post(
    "",
    response_model=PurchaseOut,
    status_code=201,
    summary="Register a supplier purchase and receive its batches",
    responses=error_responses(404, 422, 500),
)
def create_purchase(payload: PurchaseCreateIn, db: Session = Depends(get_db)):
    data = PurchaseData(
        supplier_name=payload.supplier_name,
        supplier_doc_number=payload.supplier_doc_number,
        warehouse_id=payload.warehouse_id,
        series=payload.series,
        number=payload.number,
        purchase_date=payload.purchase_date,
        currency=payload.currency,
        note=payload.note,
        lines=[
            PurchaseLine(
                product_id=line.product_id,
                quantity=line.quantity,
                unit_cost=line.unit_cost,
                distribution_price=line.distribution_price,
                expiry_date=line.expiry_date,
            )
            for line in payload.lines
        ],
    )
    with atomic(db):
        purchase = purchase_service.create_purchase(db, data)
    db.refresh(purchase)
    return _purchase_out(db, purchase)


@router.get(
    "/{purchase_id}",
    response_model=PurchaseOut,
    summary="Get purchase",
    responses=error_responses(404, 422, 500),
)
def get_purchase(purchase_id: str, db: Session = Depends(get_db)):
    purchase = purchase_service.get_purchase(db, purchase_id)
    return _purchase_out(db, purchase)


@router.post(
    "/{purchase_id}/void",
    response_model=PurchaseOut,
    summary="Void a purchase whose stock is untouched",
    responses=error_responses(404, 422, 500),
)
def void_purchase(purchase_id: str, payload: PurchaseVoidIn, db: Session = Depends(get_db)):
    with atomic(db):
        purchase = purchase_service.void_purchase(db, purchase_id, payload.reason)
    db.refresh(purchase)
    return _purchase_out(db, purchase)
