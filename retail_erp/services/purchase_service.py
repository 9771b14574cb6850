import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from retail_erp.core.config import settings
from retail_erp.core.errors import DomainValidationError, InventoryIntegrityError, NotFoundError
from retail_erp.core.id_utils import new_id
from retail_erp.core.money import ZERO_MONEY, to_money
from retail_erp.core.observability import log_event
from retail_erp.models.inventory import PurchaseBatch
from retail_erp.models.purchase import PURCHASE_REGISTERED, PURCHASE_VOIDED, Purchase, PurchaseDetail
from retail_erp.services import batch_service, catalog_service, inventory_service, stock_service
from retail_erp.services.audit_service import log_audit_event

logger = logging.getLogger(__name__)


@dataclass
class PurchaseLine:
    product_id: str
    quantity: int
    unit_cost: Decimal
    distribution_price: Decimal | None = None
    expiry_date: date | None = None


@dataclass
class PurchaseData:
    supplier_name: str
    warehouse_id: str
    series: str
    number: str
    lines: list[PurchaseLine]
    supplier_doc_number: str | None = None
    purchase_date: date | None = None
    currency: str | None = None
    note: str | None = None


def get_purchase(db: Session, purchase_id: str) -> Purchase:
    purchase = db.get(Purchase, purchase_id)
    if not purchase:
        raise NotFoundError(f"Purchase not found: {purchase_id}")
    return purchase


def get_purchase_details(db: Session, purchase_id: str) -> list[PurchaseDetail]:
    return list(
        db.execute(select(PurchaseDetail).where(PurchaseDetail.purchase_id == purchase_id)).scalars().all()
    )


def get_purchase_batches(db: Session, purchase_id: str) -> list[PurchaseBatch]:
    return list(
        db.execute(
            select(PurchaseBatch).where(PurchaseBatch.purchase_id == purchase_id).order_by(PurchaseBatch.id)
        ).scalars().all()
    )


def create_purchase(db: Session, data: PurchaseData) -> Purchase:
    """
    Register a supplier purchase. Every line becomes one batch received through
    stock_in. Unit costs are net of IGV; tax is computed on the subtotal.
    """
    if not data.lines:
        raise DomainValidationError("A purchase needs at least one line")
    warehouse = catalog_service.get_warehouse(db, data.warehouse_id)
    if not warehouse.is_active:
        raise DomainValidationError(f"Warehouse is not active: {warehouse.code}")

    purchase_date = data.purchase_date or date.today()
    purchase = Purchase(
        id=new_id(),
        supplier_name=data.supplier_name.strip(),
        supplier_doc_number=data.supplier_doc_number,
        warehouse_id=warehouse.id,
        series=data.series.strip().upper(),
        number=data.number.strip(),
        purchase_date=purchase_date,
        currency=(data.currency or settings.default_currency).upper(),
        subtotal=ZERO_MONEY,
        tax=ZERO_MONEY,
        total=ZERO_MONEY,
        status=PURCHASE_REGISTERED,
        note=data.note,
    )
    db.add(purchase)
    try:
        db.flush()
    except IntegrityError as exc:
        raise DomainValidationError(
            f"Purchase document {purchase.series}-{purchase.number} is already registered for this supplier"
        ) from exc

    subtotal = ZERO_MONEY
    for line in data.lines:
        if line.quantity <= 0:
            raise DomainValidationError("Purchase line quantity must be positive")
        catalog_service.get_product(db, line.product_id)
        unit_cost = to_money(line.unit_cost)
        distribution_price = to_money(line.distribution_price) if line.distribution_price is not None else unit_cost
        line_total = to_money(unit_cost * line.quantity)
        db.add(
            PurchaseDetail(
                id=new_id(),
                purchase_id=purchase.id,
                product_id=line.product_id,
                quantity=line.quantity,
                unit_cost=unit_cost,
                distribution_price=distribution_price,
                line_total=line_total,
                expiry_date=line.expiry_date,
            )
        )
        stock_service.stock_in(
            db,
            line.product_id,
            warehouse.id,
            line.quantity,
            unit_cost,
            distribution_price,
            expiry_date=line.expiry_date,
            purchase_date=purchase_date,
            purchase_id=purchase.id,
            batch_code=f"{purchase.series}-{purchase.number}",
            reference_type="purchase",
            reference_id=purchase.id,
        )
        subtotal += line_total

    purchase.subtotal = to_money(subtotal)
    purchase.tax = to_money(subtotal * settings.igv_rate)
    purchase.total = to_money(purchase.subtotal + purchase.tax)

    log_audit_event(
        db,
        action="purchase.create",
        target_type="purchase",
        target_id=purchase.id,
        metadata_json={
            "supplier_name": purchase.supplier_name,
            "document": f"{purchase.series}-{purchase.number}",
            "lines": len(data.lines),
            "total": float(purchase.total),
        },
    )
    log_event(logger, "purchase_registered", purchase_id=purchase.id, lines=len(data.lines), total=str(purchase.total))
    db.flush()
    return purchase


def void_purchase(db: Session, purchase_id: str, reason: str | None = None) -> Purchase:
    """
    Void a purchase whose stock is still untouched. Batches go inactive and the
    ledger is debited through purchase_void out-movements; nothing is deleted.
    """
    purchase = db.execute(
        select(Purchase).where(Purchase.id == purchase_id).with_for_update()
    ).scalar_one_or_none()
    if not purchase:
        raise NotFoundError(f"Purchase not found: {purchase_id}")
    if purchase.status == PURCHASE_VOIDED:
        raise DomainValidationError("Purchase is already voided", details=[{"purchase_id": purchase.id}])

    batches = get_purchase_batches(db, purchase.id)
    locked = inventory_service.lock_inventory_rows(db, [(batch.product_id, batch.warehouse_id) for batch in batches])

    touched = [batch for batch in batches if batch.quantity_available != batch.quantity_purchased]
    if touched:
        raise DomainValidationError(
            "Purchase stock has already been used and cannot be voided",
            details=[
                {
                    "batch_id": batch.id,
                    "quantity_purchased": batch.quantity_purchased,
                    "quantity_available": batch.quantity_available,
                }
                for batch in touched
            ],
        )

    for batch in batches:
        removed = batch_service.deactivate_batch(
            db,
            batch,
            "purchase_void",
            purchase.id,
            note=reason,
        )
        inventory = locked[(batch.product_id, batch.warehouse_id)]
        if removed and inventory is None:
            raise InventoryIntegrityError(
                f"No inventory row for product {batch.product_id} in warehouse {batch.warehouse_id}",
                details=[{"purchase_id": purchase.id, "batch_id": batch.id}],
            )
        if removed:
            inventory_service.remove_available(db, inventory, removed)

    purchase.status = PURCHASE_VOIDED
    purchase.voided_at = datetime.now(timezone.utc)
    log_audit_event(
        db,
        action="purchase.void",
        target_type="purchase",
        target_id=purchase.id,
        metadata_json={"reason": reason, "batches": len(batches)},
    )
    log_event(logger, "purchase_voided", purchase_id=purchase.id, batches=len(batches))
    db.flush()
    return purchase
