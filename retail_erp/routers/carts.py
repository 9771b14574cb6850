from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from retail_erp.core.api_docs import error_responses
from retail_erp.core.deps import get_db
from retail_erp.core.money import to_money
from retail_erp.db.unit_of_work import atomic
from retail_erp.models.cart import Cart
from retail_erp.routers.orders import order_detail_out
from retail_erp.schemas.cart import CartCreateIn, CartItemIn, CartItemOut, CartOut, CartTotalsOut
from retail_erp.schemas.checkout import CheckoutIn
from retail_erp.schemas.order import OrderDetailOut
from retail_erp.services import cart_service

router = APIRouter(prefix="/carts", tags=["carts"])


def _cart_out(db: Session, cart: Cart) -> CartOut:
    items = cart_service.get_cart_items(db, cart.id)
    totals = cart_service.cart_totals(db, cart)
    return CartOut(
        id=cart.id,
        customer_ref=cart.customer_ref,
        status=cart.status,
        items=[
            CartItemOut(
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price=float(to_money(item.unit_price)),
                line_total=float(to_money(to_money(item.unit_price) * item.quantity)),
            )
            for item in items
        ],
        totals=CartTotalsOut(
            subtotal=float(totals.subtotal),
            tax=float(totals.tax),
            shipping_cost=float(totals.shipping_cost),
            total=float(totals.total),
            items_count=totals.items_count,
        ),
        created_at=cart.created_at,
        converted_at=cart.converted_at,
    )


@router.post(
    "",
    response_model=CartOut,
    summary="Open a cart (or reuse the customer's open cart)",
    responses=error_responses(422, 500),
)
def create_cart(payload: CartCreateIn, db: Session = Depends(get_db)):
    with atomic(db):
        cart = cart_service.get_or_create_cart(db, payload.customer_ref)
    db.refresh(cart)
    return _cart_out(db, cart)


@router.get(
    "/{cart_id}",
    response_model=CartOut,
    summary="Get cart with totals",
    responses=error_responses(404, 422, 500),
)
def get_cart(cart_id: str, db: Session = Depends(get_db)):
    cart = cart_service.get_cart(db, cart_id)
    return _cart_out(db, cart)


@router.put(
    "/{cart_id}/items",
    response_model=CartOut,
    summary="Add, update or remove (quantity 0) a cart line",
    responses=error_responses(404, 422, 500),
)
def put_cart_item(cart_id: str, payload: CartItemIn, db: Session = Depends(get_db)):
    with atomic(db):
        cart = cart_service.get_cart(db, cart_id)
        cart_service.add_or_update_item(db, cart, payload.product_id, payload.quantity)
    db.refresh(cart)
    return _cart_out(db, cart)


@router.delete(
    "/{cart_id}/items/{product_id}",
    response_model=CartOut,
    summary="Remove a cart line",
    responses=error_responses(404, 422, 500),
)
def delete_cart_item(cart_id: str, product_id: str, db: Session = Depends(get_db)):
    with atomic(db):
        cart = cart_service.get_cart(db, cart_id)
        cart_service.remove_item(db, cart, product_id)
    db.refresh(cart)
    return _cart_out(db, cart)


@router.post(
    "/{cart_id}/checkout",
    response_model=OrderDetailOut,
    status_code=201,
    summary="Checkout: reserve every line and create a pending order",
    responses=error_responses(404, 422, 500),
)
def checkout(cart_id: str, payload: CheckoutIn, db: Session = Depends(get_db)):
    with atomic(db):
        cart = cart_service.get_cart(db, cart_id)
        order = cart_service.checkout(
            db,
            cart,
            payload.customer,
            payload.address,
            currency=payload.currency,
            note=payload.note,
        )
    db.refresh(order)
    return order_detail_out(db, order)
