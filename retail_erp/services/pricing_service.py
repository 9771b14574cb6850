from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from retail_erp.core.config import settings
from retail_erp.core.money import to_money
from retail_erp.models.catalog import PriceList, ProductPrice


def get_default_price_list(db: Session) -> PriceList | None:
    return db.execute(
        select(PriceList).where(
            PriceList.code == settings.default_price_list_code,
            PriceList.is_active.is_(True),
        )
    ).scalar_one_or_none()


def get_price(
    db: Session,
    product_id: str,
    price_list_id: str,
    warehouse_id: str | None = None,
) -> Decimal | None:
    """Price for a product on a list. A warehouse-specific row beats the general one."""
    rows = db.execute(
        select(ProductPrice).where(
            ProductPrice.product_id == product_id,
            ProductPrice.price_list_id == price_list_id,
        )
    ).scalars().all()

    general: ProductPrice | None = None
    for row in rows:
        if warehouse_id is not None and row.warehouse_id == warehouse_id:
            return to_money(row.price)
        if row.warehouse_id is None:
            general = row
    if general is None:
        return None
    return to_money(general.price)
