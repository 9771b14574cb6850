import time
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from retail_erp.core.config import settings
from retail_erp.core.errors import NotFoundError
from retail_erp.models.catalog import Category, Product
from retail_erp.models.warehouse import Warehouse


@dataclass(frozen=True)
class CategoryMargins:
    min_margin_pct: Decimal | None
    normal_margin_pct: Decimal | None


# Per process: category id -> (margins, monotonic expiry). Edits made through another
# worker are picked up once the entry expires.
_margin_cache: dict[str, tuple[CategoryMargins, float]] = {}
_clock = time.monotonic


def invalidate_category_margins(category_id: str | None = None) -> None:
    """Drop resolved margins. Call after editing any category in the tree."""
    if category_id is None:
        _margin_cache.clear()
    else:
        _margin_cache.pop(category_id, None)


def get_product(db: Session, product_id: str) -> Product:
    product = db.get(Product, product_id)
    if not product:
        raise NotFoundError(f"Product not found: {product_id}")
    return product


def get_active_product(db: Session, product_id: str) -> Product:
    product = get_product(db, product_id)
    if not product.is_active:
        raise NotFoundError(f"Product is not active: {product_id}")
    return product


def get_category(db: Session, category_id: str) -> Category:
    category = db.get(Category, category_id)
    if not category:
        raise NotFoundError(f"Category not found: {category_id}")
    return category


def get_warehouse(db: Session, warehouse_id: str) -> Warehouse:
    warehouse = db.get(Warehouse, warehouse_id)
    if not warehouse:
        raise NotFoundError(f"Warehouse not found: {warehouse_id}")
    return warehouse


def get_sales_warehouse(db: Session) -> Warehouse | None:
    """Main, active and online warehouse; highest picking priority wins."""
    return db.execute(
        select(Warehouse)
        .where(
            Warehouse.is_main.is_(True),
            Warehouse.is_active.is_(True),
            Warehouse.visible_online.is_(True),
        )
        .order_by(Warehouse.picking_priority.desc(), Warehouse.code.asc())
        .limit(1)
    ).scalar_one_or_none()


def resolve_category_margins(db: Session, category_id: str | None) -> CategoryMargins:
    """
    Walk up the category tree until both margins are known.

    A margin left unset on a category is taken from its nearest ancestor that sets it.
    Results are cached per category id for category_margin_cache_ttl_seconds, or until
    invalidate_category_margins() is called. A TTL of 0 disables the cache.
    """
    if category_id is None:
        return CategoryMargins(min_margin_pct=None, normal_margin_pct=None)
    ttl = settings.category_margin_cache_ttl_seconds
    cached = _margin_cache.get(category_id)
    if cached is not None and ttl > 0 and cached[1] > _clock():
        return cached[0]

    min_margin: Decimal | None = None
    normal_margin: Decimal | None = None
    seen: set[str] = set()
    current_id: str | None = category_id
    while current_id and current_id not in seen:
        seen.add(current_id)
        category = db.get(Category, current_id)
        if category is None:
            break
        if min_margin is None and category.min_margin_pct is not None:
            min_margin = Decimal(str(category.min_margin_pct))
        if normal_margin is None and category.normal_margin_pct is not None:
            normal_margin = Decimal(str(category.normal_margin_pct))
        if min_margin is not None and normal_margin is not None:
            break
        current_id = category.parent_id

    margins = CategoryMargins(min_margin_pct=min_margin, normal_margin_pct=normal_margin)
    if ttl > 0:
        _margin_cache[category_id] = (margins, _clock() + ttl)
    else:
        _margin_cache.pop(category_id, None)
    return margins
