from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, select

from retail_erp.core.config import settings
from retail_erp.db.unit_of_work import atomic
from retail_erp.models.audit_log import AuditLog
from retail_erp.models.cart import CART_OPEN, Cart
from retail_erp.models.inventory import StockMovement
from retail_erp.models.order import Order
from retail_erp.models.sales import Payment, Sale
from retail_erp.schemas.checkout import CheckoutIn
from retail_erp.services import cart_service, catalog_service, inventory_service, order_service, stock_service

CUSTOMER = {
    "customer_name": "Ana Quispe",
    "document_type": "01",
    "document_number": "45678912",
    "email": "ana@example.com",
    "phone": "+51 999 888 777",
    "address": "Av. Arequipa 1234",
    "district": "Lince",
    "city": "Lima",
}


def _stock_in(client, product_id: str, warehouse_id: str, quantity: int, unit_cost: float, purchase_date: str):
    res = client.post(
        "/inventory/stock-in",
        json={
            "product_id": product_id,
            "warehouse_id": warehouse_id,
            "quantity": quantity,
            "unit_cost": unit_cost,
            "purchase_date": purchase_date,
        },
    )
    assert res.status_code == 200, res.text
    return res.json()["batch"]["id"]


def _stock_level(client, product_id: str, warehouse_id: str) -> tuple[int, int]:
    res = client.get(f"/inventory/stock/{product_id}")
    assert res.status_code == 200, res.text
    for row in res.json()["warehouses"]:
        if row["warehouse_id"] == warehouse_id:
            return row["available_stock"], row["reserved_stock"]
    return 0, 0


def _batches(client, product_id: str, warehouse_id: str) -> dict[str, tuple[int, str]]:
    rows = {}
    for status in ("active", "depleted"):
        res = client.get(
            "/inventory/batches",
            params={"product_id": product_id, "warehouse_id": warehouse_id, "status": status},
        )
        assert res.status_code == 200, res.text
        for batch in res.json()["items"]:
            rows[batch["id"]] = (batch["quantity_available"], batch["status"])
    return rows


def _cart_with(client, lines: list[tuple[str, int]], customer_ref: str = "web-ana") -> str:
    res = client.post("/carts", json={"customer_ref": customer_ref})
    assert res.status_code == 200, res.text
    cart_id = res.json()["id"]
    for product_id, quantity in lines:
        put = client.put(f"/carts/{cart_id}/items", json={"product_id": product_id, "quantity": quantity})
        assert put.status_code == 200, put.text
    return cart_id


def _seed_fifo_stock(client, seeded) -> tuple[str, str]:
    b1 = _stock_in(client, seeded["product_a"], seeded["main"], 10, 10.0, "2026-01-01")
    b2 = _stock_in(client, seeded["product_a"], seeded["main"], 10, 12.0, "2026-01-15")
    return b1, b2


def _place_order(client, seeded, quantity: int = 15) -> dict:
    cart_id = _cart_with(client, [(seeded["product_a"], quantity)])
    res = client.post(f"/carts/{cart_id}/checkout", json=CUSTOMER)
    assert res.status_code == 201, res.text
    return res.json()


def test_checkout_reserves_fifo_and_snapshots_customer(test_context, seeded):
    client, session_local = test_context
    b1, b2 = _seed_fifo_stock(client, seeded)

    order = _place_order(client, seeded)

    assert order["status"] == "pending"
    assert order["customer_name"] == "Ana Quispe"
    assert order["customer_doc_number"] == "45678912"
    assert order["shipping_city"] == "Lima"
    assert order["subtotal"] == 300.0
    assert order["tax"] == 54.0
    assert order["total"] == 354.0
    assert order["currency"] == "PEN"

    [item] = order["items"]
    assert item["quantity"] == 15
    assert item["unit_price"] == 20.0
    assert item["unit_cost"] == 10.67
    assert [(a["purchase_batch_id"], a["quantity"], a["sequence"]) for a in item["allocations"]] == [
        (b1, 10, 1),
        (b2, 5, 2),
    ]
    assert [row["to_status"] for row in order["history"]] == ["pending"]

    assert _stock_level(client, seeded["product_a"], seeded["main"]) == (5, 15)
    assert _batches(client, seeded["product_a"], seeded["main"]) == {b1: (0, "depleted"), b2: (5, "active")}

    db = session_local()
    try:
        cart = db.execute(select(Cart).where(Cart.customer_ref == "web-ana")).scalar_one()
        assert cart.status == "converted"
        assert cart_service.get_cart_items(db, cart.id) == []
    finally:
        db.close()


def test_confirm_settles_reservation_without_touching_batches(test_context, seeded):
    client, session_local = test_context
    b1, b2 = _seed_fifo_stock(client, seeded)
    order = _place_order(client, seeded)

    db = session_local()
    try:
        movements_before = db.execute(select(func.count(StockMovement.id))).scalar_one()
    finally:
        db.close()

    res = client.post(
        f"/orders/{order['id']}/confirm",
        json={"payment_method": "card", "transaction_ref": "ch_3PqZ2x"},
    )
    assert res.status_code == 200, res.text
    sale = res.json()
    assert sale["order_id"] == order["id"]
    assert sale["total"] == 354.0
    assert sale["cost_total"] == 160.0
    assert sale["margin_total"] == 140.0
    [sale_item] = sale["items"]
    assert sale_item["unit_cost"] == 10.67
    assert sale_item["margin_pct"] == 46.65
    assert sale_item["below_min_margin"] is False
    [payment] = sale["payments"]
    assert (payment["method"], payment["reference"], payment["amount"]) == ("card", "ch_3PqZ2x", 354.0)

    assert _stock_level(client, seeded["product_a"], seeded["main"]) == (5, 0)
    assert _batches(client, seeded["product_a"], seeded["main"]) == {b1: (0, "depleted"), b2: (5, "active")}

    detail = client.get(f"/orders/{order['id']}").json()
    assert detail["status"] == "paid"
    assert detail["sale_id"] == sale["id"]
    assert [row["to_status"] for row in detail["history"]] == ["pending", "paid"]

    db = session_local()
    try:
        movements_after = db.execute(select(func.count(StockMovement.id))).scalar_one()
        assert movements_after == movements_before
    finally:
        db.close()


def test_confirm_twice_is_rejected_and_creates_one_sale(test_context, seeded):
    client, session_local = test_context
    _seed_fifo_stock(client, seeded)
    order = _place_order(client, seeded)

    first = client.post(f"/orders/{order['id']}/confirm", json={})
    assert first.status_code == 200, first.text

    second = client.post(f"/orders/{order['id']}/confirm", json={"payment_method": "cash"})
    assert second.status_code == 409, second.text
    error = second.json()["error"]
    assert error["code"] == "order_not_confirmable"
    assert error["details"] == [{"order_id": order["id"], "status": "paid"}]

    assert _stock_level(client, seeded["product_a"], seeded["main"]) == (5, 0)

    db = session_local()
    try:
        assert db.execute(select(func.count(Sale.id))).scalar_one() == 1
        assert db.execute(select(func.count(Payment.id))).scalar_one() == 1
        payment = db.execute(select(Payment)).scalar_one()
        assert payment.method == "card"
    finally:
        db.close()


def test_cancel_restores_batches_and_ledger(test_context, seeded):
    client, _ = test_context
    b1, b2 = _seed_fifo_stock(client, seeded)
    order = _place_order(client, seeded)

    res = client.post(f"/orders/{order['id']}/cancel", json={"reason": "Customer changed mind"})
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["status"] == "cancelled"
    assert body["cancelled_at"] is not None
    assert [row["to_status"] for row in body["history"]] == ["pending", "cancelled"]

    assert _stock_level(client, seeded["product_a"], seeded["main"]) == (20, 0)
    assert _batches(client, seeded["product_a"], seeded["main"]) == {b1: (10, "active"), b2: (10, "active")}

    again = client.post(f"/orders/{order['id']}/cancel", json={})
    assert again.status_code == 409, again.text
    assert again.json()["error"]["code"] == "order_not_cancellable"


def test_cancel_paid_order_is_refused(test_context, seeded):
    client, _ = test_context
    _seed_fifo_stock(client, seeded)
    order = _place_order(client, seeded)
    assert client.post(f"/orders/{order['id']}/confirm", json={}).status_code == 200

    res = client.post(f"/orders/{order['id']}/cancel", json={"reason": "too late"})

    assert res.status_code == 409, res.text
    assert res.json()["error"]["code"] == "order_not_cancellable"
    assert _stock_level(client, seeded["product_a"], seeded["main"]) == (5, 0)


def test_confirm_unknown_order_returns_not_found(test_context, seeded):
    client, _ = test_context

    res = client.post("/orders/missing-order/confirm", json={})

    assert res.status_code == 404, res.text
    assert res.json()["error"]["code"] == "not_found"


def test_checkout_is_all_or_nothing_across_lines(test_context, seeded):
    client, session_local = test_context
    product_a, product_b, main = seeded["product_a"], seeded["product_b"], seeded["main"]
    _stock_in(client, product_a, main, 10, 10.0, "2026-01-01")
    _stock_in(client, product_b, main, 4, 20.0, "2026-01-01")

    cart_id = _cart_with(client, [(product_a, 5), (product_b, 3)])

    # Stock drops after the soft cart check; checkout must fail on product B's line.
    adjust = client.post(
        "/inventory/adjust-out",
        json={"product_id": product_b, "warehouse_id": main, "quantity": 3, "reason": "damaged_stock"},
    )
    assert adjust.status_code == 200, adjust.text

    db = session_local()
    try:
        lines = cart_service.get_cart_items(db, cart_id)
        failing_line = [item.product_id for item in lines].index(product_b) + 1
    finally:
        db.close()

    res = client.post(f"/carts/{cart_id}/checkout", json=CUSTOMER)

    assert res.status_code == 422, res.text
    error = res.json()["error"]
    assert error["code"] == "checkout_line_failed"
    [detail] = error["details"]
    assert detail["line"] == failing_line
    assert detail["product_id"] == product_b
    assert detail["reason"] == "insufficient_stock"
    assert (detail["requested"], detail["available"]) == (3, 1)

    assert _stock_level(client, product_a, main) == (10, 0)
    assert _stock_level(client, product_b, main) == (1, 0)

    db = session_local()
    try:
        assert db.execute(select(func.count(Order.id))).scalar_one() == 0
        cart = db.get(Cart, cart_id)
        assert cart.status == CART_OPEN
        assert len(cart_service.get_cart_items(db, cart_id)) == 2
        order_movements = db.execute(
            select(func.count(StockMovement.id)).where(StockMovement.reference_type == "order")
        ).scalar_one()
        assert order_movements == 0
    finally:
        db.close()


def test_cart_soft_check_and_totals(test_context, seeded):
    client, _ = test_context
    _stock_in(client, seeded["product_a"], seeded["main"], 3, 10.0, "2026-01-01")

    cart_id = _cart_with(client, [])
    too_many = client.put(f"/carts/{cart_id}/items", json={"product_id": seeded["product_a"], "quantity": 4})
    assert too_many.status_code == 422, too_many.text
    assert too_many.json()["error"]["code"] == "insufficient_stock"

    ok = client.put(f"/carts/{cart_id}/items", json={"product_id": seeded["product_a"], "quantity": 3})
    assert ok.status_code == 200, ok.text
    totals = ok.json()["totals"]
    assert (totals["subtotal"], totals["tax"], totals["total"], totals["items_count"]) == (60.0, 10.8, 70.8, 3)

    # Stock held outside the sales warehouse does not count for the cart.
    _stock_in(client, seeded["product_b"], seeded["north"], 3, 10.0, "2026-01-01")
    not_in_sales_warehouse = client.put(
        f"/carts/{cart_id}/items", json={"product_id": seeded["product_b"], "quantity": 1}
    )
    assert not_in_sales_warehouse.status_code == 422, not_in_sales_warehouse.text

    removed = client.put(f"/carts/{cart_id}/items", json={"product_id": seeded["product_a"], "quantity": 0})
    assert removed.status_code == 200, removed.text
    assert removed.json()["items"] == []
    assert removed.json()["totals"]["total"] == 0.0


def test_checkout_empty_cart_is_rejected(test_context, seeded):
    client, _ = test_context
    cart_id = _cart_with(client, [])

    res = client.post(f"/carts/{cart_id}/checkout", json=CUSTOMER)

    assert res.status_code == 422, res.text
    assert res.json()["error"]["code"] == "validation_error"


def test_fulfillment_moves_forward_only(test_context, seeded):
    client, _ = test_context
    _seed_fifo_stock(client, seeded)
    order = _place_order(client, seeded, quantity=2)

    pending_skip = client.patch(f"/orders/{order['id']}/status", json={"status": "preparing"})
    assert pending_skip.status_code == 409, pending_skip.text

    assert client.post(f"/orders/{order['id']}/confirm", json={}).status_code == 200

    jump = client.patch(f"/orders/{order['id']}/status", json={"status": "delivered"})
    assert jump.status_code == 409, jump.text
    assert jump.json()["error"]["code"] == "order_state_conflict"

    for status in ("preparing", "shipped", "delivered"):
        res = client.patch(f"/orders/{order['id']}/status", json={"status": status, "note": f"now {status}"})
        assert res.status_code == 200, res.text
        assert res.json()["status"] == status

    back = client.patch(f"/orders/{order['id']}/status", json={"status": "shipped"})
    assert back.status_code == 409, back.text

    detail = client.get(f"/orders/{order['id']}").json()
    assert [row["to_status"] for row in detail["history"]] == [
        "pending",
        "paid",
        "preparing",
        "shipped",
        "delivered",
    ]
    assert _stock_level(client, seeded["product_a"], seeded["main"]) == (18, 0)


def test_expire_pending_orders_releases_stock(test_context, seeded):
    client, session_local = test_context
    _seed_fifo_stock(client, seeded)
    order = _place_order(client, seeded)

    db = session_local()
    try:
        with atomic(db):
            assert order_service.expire_pending_orders(db, 60) == []

        with atomic(db):
            expired = order_service.expire_pending_orders(
                db,
                60,
                now=datetime.now(timezone.utc) + timedelta(minutes=61),
            )
        assert expired == [order["id"]]

        db.expire_all()
        expired_order = order_service.get_order(db, order["id"])
        assert expired_order.status == "cancelled"
        history = order_service.get_status_history(db, order["id"])
        assert history[-1].note == "Auto-cancelled after 60 minutes without payment."

        audit = db.execute(select(AuditLog).where(AuditLog.action == "order.auto_cancel")).scalar_one()
        assert audit.target_id == order["id"]
    finally:
        db.close()

    assert _stock_level(client, seeded["product_a"], seeded["main"]) == (20, 0)


def test_list_orders_filters_by_status(test_context, seeded):
    client, _ = test_context
    _seed_fifo_stock(client, seeded)
    first = _place_order(client, seeded, quantity=2)
    second_cart = _cart_with(client, [(seeded["product_a"], 1)], customer_ref="web-luis")
    second = client.post(f"/carts/{second_cart}/checkout", json={**CUSTOMER, "customer_name": "Luis"}).json()
    assert client.post(f"/orders/{second['id']}/cancel", json={}).status_code == 200

    pending = client.get("/orders", params={"status": "pending"})
    assert pending.status_code == 200, pending.text
    assert [row["id"] for row in pending.json()["items"]] == [first["id"]]
    assert pending.json()["pagination"]["total"] == 1

    everything = client.get("/orders")
    assert everything.json()["pagination"]["total"] == 2

    invalid = client.get("/orders", params={"status": "lost"})
    assert invalid.status_code == 422, invalid.text


def test_sale_below_category_minimum_margin_is_flagged(test_context, seeded):
    client, session_local = test_context
    # Mouse sells at 20.00; a 15.00 cost leaves 25%, under the inherited 30% floor.
    _stock_in(client, seeded["product_a"], seeded["main"], 5, 15.0, "2026-01-01")
    order = _place_order(client, seeded, quantity=2)

    res = client.post(f"/orders/{order['id']}/confirm", json={"payment_method": "transfer"})

    assert res.status_code == 200, res.text
    [item] = res.json()["items"]
    assert item["margin_pct"] == 25.0
    assert item["below_min_margin"] is True

    db = session_local()
    try:
        audit = db.execute(select(AuditLog).where(AuditLog.action == "order.confirm")).scalar_one()
        assert audit.metadata_json["below_min_margin_lines"] == 1
    finally:
        db.close()


def test_category_margins_inherit_from_ancestors(test_context, seeded):
    _, session_local = test_context

    db = session_local()
    try:
        margins = catalog_service.resolve_category_margins(db, seeded["child_category"])
        assert margins.min_margin_pct == Decimal("30.00")
        assert margins.normal_margin_pct == Decimal("45.00")

        child = catalog_service.get_category(db, seeded["child_category"])
        with atomic(db):
            child.min_margin_pct = Decimal("40.00")
        assert catalog_service.resolve_category_margins(db, child.id).min_margin_pct == Decimal("30.00")

        catalog_service.invalidate_category_margins(child.id)
        refreshed = catalog_service.resolve_category_margins(db, child.id)
        assert refreshed.min_margin_pct == Decimal("40.00")
        assert refreshed.normal_margin_pct == Decimal("45.00")
    finally:
        db.close()


def test_checkout_service_uses_sales_warehouse_and_shipping(test_context, seeded):
    _, session_local = test_context
    settings.default_shipping_cost = Decimal("15.00")
    db = session_local()
    try:
        with atomic(db):
            stock_service.stock_in(db, seeded["product_b"], seeded["main"], 6, Decimal("20.00"))
        with atomic(db):
            cart = cart_service.get_or_create_cart(db, "svc-cart")
            cart_service.add_or_update_item(db, cart, seeded["product_b"], 2)
            payload = CheckoutIn.model_validate({"customer_name": "Tienda Sur", "address": "Jr. Puno 455"})
            order = cart_service.checkout(db, cart, payload.customer, payload.address)
            order_id = order.id

        db.expire_all()
        saved = order_service.get_order(db, order_id)
        assert saved.warehouse_id == seeded["main"]
        assert saved.subtotal == Decimal("70.00")
        assert saved.tax == Decimal("12.60")
        assert saved.shipping_cost == Decimal("15.00")
        assert saved.total == Decimal("97.60")
        inventory = inventory_service.get_inventory(db, seeded["product_b"], seeded["main"])
        assert (inventory.available_stock, inventory.reserved_stock) == (4, 2)
    finally:
        db.close()


def test_sales_list_and_detail_after_confirm(test_context, seeded):
    client, _ = test_context
    _seed_fifo_stock(client, seeded)
    order = _place_order(client, seeded)
    sale_id = client.post(f"/orders/{order['id']}/confirm", json={"payment_method": "cash"}).json()["id"]

    listing = client.get("/sales")
    assert listing.status_code == 200, listing.text
    body = listing.json()
    assert body["pagination"]["total"] == 1
    assert [row["id"] for row in body["items"]] == [sale_id]

    detail = client.get(f"/sales/{sale_id}").json()
    assert detail["order_id"] == order["id"]
    assert detail["payments"][0]["method"] == "cash"

    assert client.get("/sales/missing").status_code == 404
    bad_range = client.get("/sales", params={"start_date": "2026-03-02", "end_date": "2026-03-01"})
    assert bad_range.status_code == 422


def test_category_margins_expire_after_cache_ttl(test_context, seeded, monkeypatch):
    _, session_local = test_context
    clock = [1000.0]
    monkeypatch.setattr(settings, "category_margin_cache_ttl_seconds", 60)
    monkeypatch.setattr(catalog_service, "_clock", lambda: clock[0])

    db = session_local()
    try:
        assert catalog_service.resolve_category_margins(db, seeded["root_category"]).min_margin_pct == Decimal("30.00")

        root = catalog_service.get_category(db, seeded["root_category"])
        with atomic(db):
            root.min_margin_pct = Decimal("25.00")

        clock[0] += 59
        assert catalog_service.resolve_category_margins(db, root.id).min_margin_pct == Decimal("30.00")

        clock[0] += 2
        assert catalog_service.resolve_category_margins(db, root.id).min_margin_pct == Decimal("25.00")

        monkeypatch.setattr(settings, "category_margin_cache_ttl_seconds", 0)
        with atomic(db):
            root.min_margin_pct = Decimal("20.00")
        assert catalog_service.resolve_category_margins(db, root.id).min_margin_pct == Decimal("20.00")
    finally:
        db.close()
