import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from retail_erp.core.config import settings
from retail_erp.core.errors import (
    CheckoutLineError,
    DomainError,
    DomainValidationError,
    InsufficientStockError,
    NotFoundError,
)
from retail_erp.core.id_utils import generate_document_code, new_id
from retail_erp.core.money import ZERO_MONEY, to_money
from retail_erp.core.observability import log_event
from retail_erp.models.cart import CART_CONVERTED, CART_OPEN, Cart, CartItem
from retail_erp.models.order import ORDER_PENDING, Order, OrderAllocation, OrderItem, OrderStatusHistory
from retail_erp.models.warehouse import Warehouse
from retail_erp.schemas.checkout import CheckoutAddressIn, CheckoutCustomerIn
from retail_erp.services import allocation_service, catalog_service, inventory_service, pricing_service
from retail_erp.services.audit_service import log_audit_event

logger = logging.getLogger(__name__)


@dataclass
class CartTotals:
    subtotal: Decimal
    tax: Decimal
    shipping_cost: Decimal
    total: Decimal
    items_count: int


def get_cart(db: Session, cart_id: str) -> Cart:
    cart = db.get(Cart, cart_id)
    if not cart:
        raise NotFoundError(f"Cart not found: {cart_id}")
    return cart


def get_cart_items(db: Session, cart_id: str) -> list[CartItem]:
    # Fixed line order: checkout allocates and reports failing lines in this order.
    return list(
        db.execute(
            select(CartItem)
            .where(CartItem.cart_id == cart_id)
            .order_by(CartItem.created_at.asc(), CartItem.product_id.asc())
        ).scalars().all()
    )


def get_or_create_cart(db: Session, customer_ref: str | None = None) -> Cart:
    if customer_ref:
        existing = db.execute(
            select(Cart)
            .where(Cart.customer_ref == customer_ref, Cart.status == CART_OPEN)
            .order_by(Cart.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()
        if existing:
            return existing

    cart = Cart(id=new_id(), customer_ref=customer_ref, status=CART_OPEN)
    db.add(cart)
    db.flush()
    return cart


def _ensure_open(cart: Cart) -> None:
    if cart.status != CART_OPEN:
        raise DomainValidationError(
            "Cart is no longer open",
            details=[{"cart_id": cart.id, "status": cart.status}],
        )


def _require_sales_warehouse(db: Session) -> Warehouse:
    warehouse = catalog_service.get_sales_warehouse(db)
    if warehouse is None:
        raise DomainValidationError("No active online main warehouse is configured for sales")
    return warehouse


def _resolve_unit_price(db: Session, product_id: str, warehouse_id: str) -> Decimal:
    price_list = pricing_service.get_default_price_list(db)
    if price_list is None:
        raise DomainValidationError(f"Price list not found: {settings.default_price_list_code}")
    price = pricing_service.get_price(db, product_id, price_list.id, warehouse_id)
    if price is None:
        raise DomainValidationError(
            f"Product {product_id} has no price on list {price_list.code}",
            details=[{"product_id": product_id, "price_list": price_list.code}],
        )
    return price


def add_or_update_item(db: Session, cart: Cart, product_id: str, quantity: int) -> CartItem | None:
    """
    Set the quantity of a product in the cart. Zero removes the line.

    The stock check is a soft one against the unlocked ledger of the sales warehouse;
    the binding check happens at checkout.
    """
    _ensure_open(cart)
    if quantity < 0:
        raise DomainValidationError("Quantity cannot be negative")
    if quantity == 0:
        remove_item(db, cart, product_id)
        return None

    catalog_service.get_active_product(db, product_id)
    warehouse = _require_sales_warehouse(db)

    available = inventory_service.get_available_stock(db, product_id, warehouse.id)
    if quantity > available:
        raise InsufficientStockError(
            product_id=product_id,
            warehouse_id=warehouse.id,
            requested=quantity,
            available=available,
        )

    unit_price = _resolve_unit_price(db, product_id, warehouse.id)
    item = db.execute(
        select(CartItem).where(CartItem.cart_id == cart.id, CartItem.product_id == product_id)
    ).scalar_one_or_none()
    if item:
        item.quantity = quantity
        item.unit_price = unit_price
    else:
        item = CartItem(
            id=new_id(),
            cart_id=cart.id,
            product_id=product_id,
            quantity=quantity,
            unit_price=unit_price,
        )
        db.add(item)
    cart.updated_at = datetime.now(timezone.utc)
    db.flush()
    return item


def remove_item(db: Session, cart: Cart, product_id: str) -> bool:
    _ensure_open(cart)
    result = db.execute(
        delete(CartItem).where(CartItem.cart_id == cart.id, CartItem.product_id == product_id)
    )
    cart.updated_at = datetime.now(timezone.utc)
    return bool(result.rowcount)


def _compute_totals(items: list[tuple[int, Decimal]]) -> CartTotals:
    subtotal = to_money(sum((to_money(price) * qty for qty, price in items), ZERO_MONEY))
    tax = to_money(subtotal * settings.igv_rate)
    shipping_cost = to_money(settings.default_shipping_cost) if items else ZERO_MONEY
    return CartTotals(
        subtotal=subtotal,
        tax=tax,
        shipping_cost=shipping_cost,
        total=to_money(subtotal + tax + shipping_cost),
        items_count=sum(qty for qty, _ in items),
    )


def cart_totals(db: Session, cart: Cart) -> CartTotals:
    items = get_cart_items(db, cart.id)
    return _compute_totals([(item.quantity, item.unit_price) for item in items])


def checkout(
    db: Session,
    cart: Cart,
    customer_data: CheckoutCustomerIn,
    address_data: CheckoutAddressIn | None,
    currency: str | None = None,
    note: str | None = None,
) -> Order:
    """
    Turn an open cart into a pending order, reserving every line FIFO.

    Lines are allocated in cart order inside the caller's unit of work. The first
    line that cannot be allocated raises CheckoutLineError and nothing is kept.
    """
    _ensure_open(cart)
    items = get_cart_items(db, cart.id)
    if not items:
        raise DomainValidationError("Cart is empty", details=[{"cart_id": cart.id}])
    warehouse = _require_sales_warehouse(db)

    order = Order(
        id=new_id(),
        code=generate_document_code("ORD"),
        cart_id=cart.id,
        customer_name=customer_data.name,
        customer_doc_type=customer_data.document_type,
        customer_doc_number=customer_data.document_number,
        customer_email=str(customer_data.email) if customer_data.email else None,
        customer_phone=customer_data.phone,
        shipping_address=address_data.address if address_data else None,
        shipping_district=address_data.district if address_data else None,
        shipping_city=address_data.city if address_data else None,
        shipping_reference=address_data.reference if address_data else None,
        warehouse_id=warehouse.id,
        currency=(currency or settings.default_currency).upper(),
        status=ORDER_PENDING,
        subtotal=ZERO_MONEY,
        tax=ZERO_MONEY,
        shipping_cost=ZERO_MONEY,
        total=ZERO_MONEY,
        note=note,
    )
    db.add(order)

    priced_lines: list[tuple[int, Decimal]] = []
    for line_number, item in enumerate(items, start=1):
        try:
            catalog_service.get_active_product(db, item.product_id)
            allocation = allocation_service.allocate(
                db,
                item.product_id,
                warehouse.id,
                item.quantity,
                reference_type="order",
                reference_id=order.id,
            )
        except DomainError as exc:
            log_event(
                logger,
                "checkout_line_failed",
                level=logging.WARNING,
                cart_id=cart.id,
                line=line_number,
                product_id=item.product_id,
                reason=exc.code,
            )
            raise CheckoutLineError(line_number=line_number, product_id=item.product_id, cause=exc) from exc

        unit_price = to_money(item.unit_price)
        order_item = OrderItem(
            id=new_id(),
            order_id=order.id,
            product_id=item.product_id,
            warehouse_id=warehouse.id,
            quantity=item.quantity,
            unit_price=unit_price,
            line_total=to_money(unit_price * item.quantity),
            unit_cost=allocation.weighted_unit_cost,
        )
        db.add(order_item)
        for sequence, consumption in enumerate(allocation.batch_consumptions, start=1):
            db.add(
                OrderAllocation(
                    id=new_id(),
                    order_item_id=order_item.id,
                    purchase_batch_id=consumption.batch_id,
                    sequence=sequence,
                    quantity=consumption.quantity,
                    unit_cost=consumption.unit_cost,
                )
            )
        priced_lines.append((item.quantity, unit_price))

    totals = _compute_totals(priced_lines)
    order.subtotal = totals.subtotal
    order.tax = totals.tax
    order.shipping_cost = totals.shipping_cost
    order.total = totals.total

    db.add(
        OrderStatusHistory(
            id=new_id(),
            order_id=order.id,
            from_status=None,
            to_status=ORDER_PENDING,
            note="Created from cart checkout",
        )
    )
    cart.status = CART_CONVERTED
    cart.converted_at = datetime.now(timezone.utc)
    db.execute(delete(CartItem).where(CartItem.cart_id == cart.id))

    log_audit_event(
        db,
        action="order.create",
        target_type="order",
        target_id=order.id,
        actor=cart.customer_ref,
        metadata_json={
            "cart_id": cart.id,
            "order_code": order.code,
            "items_count": len(items),
            "total": float(totals.total),
        },
    )
    log_event(
        logger,
        "checkout_completed",
        order_id=order.id,
        order_code=order.code,
        cart_id=cart.id,
        lines=len(items),
        total=str(totals.total),
    )
    db.flush()
    return order
