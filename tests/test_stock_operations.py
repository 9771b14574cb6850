from sqlalchemy import select, update

from retail_erp.core.config import settings
from retail_erp.db.unit_of_work import atomic
from retail_erp.models.audit_log import AuditLog
from retail_erp.models.inventory import Inventory, PurchaseBatch, StockMovement, StockReservation
from retail_erp.services import inventory_service, stock_service


def _stock_in(client, product_id: str, warehouse_id: str, quantity: int, unit_cost: float, purchase_date: str):
    res = client.post(
        "/inventory/stock-in",
        json={
            "product_id": product_id,
            "warehouse_id": warehouse_id,
            "quantity": quantity,
            "unit_cost": unit_cost,
            "distribution_price": unit_cost + 2,
            "purchase_date": purchase_date,
        },
    )
    assert res.status_code == 200, res.text
    return res.json()


def _stock_level(client, product_id: str, warehouse_id: str) -> tuple[int, int]:
    res = client.get(f"/inventory/stock/{product_id}")
    assert res.status_code == 200, res.text
    for row in res.json()["warehouses"]:
        if row["warehouse_id"] == warehouse_id:
            return row["available_stock"], row["reserved_stock"]
    return 0, 0


def _purchase_payload(seeded, number: str = "000123", quantity: int = 10) -> dict:
    return {
        "supplier_name": "Distribuidora Andina SAC",
        "supplier_doc_number": "20512345678",
        "warehouse_id": seeded["main"],
        "series": "f001",
        "number": number,
        "purchase_date": "2026-02-01",
        "lines": [
            {"product_id": seeded["product_a"], "quantity": quantity, "unit_cost": 10.0, "distribution_price": 12.0},
            {"product_id": seeded["product_b"], "quantity": 4, "unit_cost": 22.5},
        ],
    }


def test_stock_in_creates_batch_and_credits_ledger(test_context, seeded):
    client, _ = test_context

    body = _stock_in(client, seeded["product_a"], seeded["main"], 8, 10.0, "2026-01-03")

    assert body["available_stock"] == 8
    assert body["reserved_stock"] == 0
    batch = body["batch"]
    assert batch["quantity_purchased"] == 8
    assert batch["quantity_available"] == 8
    assert batch["purchase_price"] == 10.0
    assert batch["distribution_price"] == 12.0
    assert batch["purchase_date"] == "2026-01-03"
    assert batch["status"] == "active"
    assert batch["batch_code"].startswith("L20260103-")

    movements = client.get(
        "/inventory/movements",
        params={"product_id": seeded["product_a"], "type": "in"},
    ).json()
    assert movements["pagination"]["total"] == 1
    [movement] = movements["items"]
    assert (movement["purchase_batch_id"], movement["quantity"], movement["reference_type"]) == (
        batch["id"],
        8,
        "adjustment",
    )


def test_adjust_out_writes_off_fifo(test_context, seeded):
    client, session_local = test_context
    first = _stock_in(client, seeded["product_a"], seeded["main"], 5, 10.0, "2026-01-01")["batch"]
    second = _stock_in(client, seeded["product_a"], seeded["main"], 5, 14.0, "2026-01-20")["batch"]

    res = client.post(
        "/inventory/adjust-out",
        json={
            "product_id": seeded["product_a"],
            "warehouse_id": seeded["main"],
            "quantity": 7,
            "reason": "damaged_stock",
        },
    )

    assert res.status_code == 200, res.text
    body = res.json()
    assert [(row["batch_id"], row["quantity"]) for row in body["batch_consumptions"]] == [
        (first["id"], 5),
        (second["id"], 2),
    ]
    assert body["total_cost"] == 78.0
    assert body["weighted_unit_cost"] == 11.14
    assert _stock_level(client, seeded["product_a"], seeded["main"]) == (3, 0)

    movements = client.get(
        "/inventory/movements",
        params={"product_id": seeded["product_a"], "reference_type": "adjustment", "type": "out"},
    ).json()
    assert sorted(row["quantity"] for row in movements["items"]) == [2, 5]
    assert {row["note"] for row in movements["items"]} == {"damaged_stock"}

    db = session_local()
    try:
        audit = db.execute(select(AuditLog).where(AuditLog.action == "inventory.adjust_out")).scalar_one()
        assert audit.metadata_json["quantity"] == 7
        assert audit.metadata_json["cost_total"] == "78.00"
    finally:
        db.close()


def test_adjust_out_beyond_available_is_rejected(test_context, seeded):
    client, _ = test_context
    _stock_in(client, seeded["product_a"], seeded["main"], 2, 10.0, "2026-01-01")

    res = client.post(
        "/inventory/adjust-out",
        json={"product_id": seeded["product_a"], "warehouse_id": seeded["main"], "quantity": 3, "reason": "count"},
    )

    assert res.status_code == 422, res.text
    assert res.json()["error"]["code"] == "insufficient_stock"
    assert _stock_level(client, seeded["product_a"], seeded["main"]) == (2, 0)


def test_transfer_moves_batches_with_their_cost_and_date(test_context, seeded):
    client, session_local = test_context
    _stock_in(client, seeded["product_a"], seeded["main"], 10, 10.0, "2026-01-01")
    _stock_in(client, seeded["product_a"], seeded["main"], 10, 12.0, "2026-01-15")

    res = client.post(
        "/inventory/transfers",
        json={
            "product_id": seeded["product_a"],
            "from_warehouse_id": seeded["main"],
            "to_warehouse_id": seeded["north"],
            "quantity": 15,
            "note": "Rebalance north store",
        },
    )

    assert res.status_code == 200, res.text
    body = res.json()
    assert body["quantity"] == 15
    assert body["weighted_unit_cost"] == 10.67
    assert len(body["destination_batch_ids"]) == 2

    assert _stock_level(client, seeded["product_a"], seeded["main"]) == (5, 0)
    assert _stock_level(client, seeded["product_a"], seeded["north"]) == (15, 0)

    north_batches = client.get(
        "/inventory/batches",
        params={"product_id": seeded["product_a"], "warehouse_id": seeded["north"]},
    ).json()["items"]
    assert [(row["purchase_date"], row["quantity_available"], row["purchase_price"]) for row in north_batches] == [
        ("2026-01-01", 10, 10.0),
        ("2026-01-15", 5, 12.0),
    ]

    movements = client.get(
        "/inventory/movements",
        params={"reference_id": body["transfer_id"]},
    ).json()
    assert sorted((row["warehouse_id"] == seeded["north"], row["type"], row["quantity"]) for row in movements["items"]) == [
        (False, "out", 5),
        (False, "out", 10),
        (True, "in", 5),
        (True, "in", 10),
    ]

    db = session_local()
    try:
        reconcile = stock_service.reconcile_inventory(db, product_id=seeded["product_a"])
        assert all(row.in_sync for row in reconcile)
    finally:
        db.close()


def test_transfer_rejects_same_warehouse_and_short_stock(test_context, seeded):
    client, _ = test_context
    _stock_in(client, seeded["product_a"], seeded["main"], 3, 10.0, "2026-01-01")

    same = client.post(
        "/inventory/transfers",
        json={
            "product_id": seeded["product_a"],
            "from_warehouse_id": seeded["main"],
            "to_warehouse_id": seeded["main"],
            "quantity": 1,
        },
    )
    assert same.status_code == 422, same.text
    assert same.json()["error"]["code"] == "validation_error"

    short = client.post(
        "/inventory/transfers",
        json={
            "product_id": seeded["product_a"],
            "from_warehouse_id": seeded["main"],
            "to_warehouse_id": seeded["north"],
            "quantity": 4,
        },
    )
    assert short.status_code == 422, short.text
    assert short.json()["error"]["code"] == "insufficient_stock"
    assert _stock_level(client, seeded["product_a"], seeded["main"]) == (3, 0)
    assert _stock_level(client, seeded["product_a"], seeded["north"]) == (0, 0)


def test_purchase_registers_batches_and_totals(test_context, seeded):
    client, _ = test_context

    res = client.post("/purchases", json=_purchase_payload(seeded))

    assert res.status_code == 201, res.text
    body = res.json()
    assert body["series"] == "F001"
    assert body["status"] == "registered"
    assert body["subtotal"] == 190.0
    assert body["tax"] == 34.2
    assert body["total"] == 224.2
    assert len(body["batch_ids"]) == 2
    assert {(row["product_id"], row["distribution_price"]) for row in body["details"]} == {
        (seeded["product_a"], 12.0),
        (seeded["product_b"], 22.5),
    }

    assert _stock_level(client, seeded["product_a"], seeded["main"]) == (10, 0)
    assert _stock_level(client, seeded["product_b"], seeded["main"]) == (4, 0)

    batches = client.get(
        "/inventory/batches",
        params={"product_id": seeded["product_a"], "warehouse_id": seeded["main"]},
    ).json()["items"]
    assert [(row["purchase_id"], row["batch_code"]) for row in batches] == [(body["id"], "F001-000123")]

    duplicate = client.post("/purchases", json=_purchase_payload(seeded))
    assert duplicate.status_code == 422, duplicate.text
    assert _stock_level(client, seeded["product_a"], seeded["main"]) == (10, 0)


def test_void_purchase_deactivates_untouched_batches(test_context, seeded):
    client, _ = test_context
    purchase = client.post("/purchases", json=_purchase_payload(seeded)).json()

    res = client.post(f"/purchases/{purchase['id']}/void", json={"reason": "Wrong supplier invoice"})

    assert res.status_code == 200, res.text
    assert res.json()["status"] == "voided"
    assert res.json()["voided_at"] is not None
    assert _stock_level(client, seeded["product_a"], seeded["main"]) == (0, 0)
    assert _stock_level(client, seeded["product_b"], seeded["main"]) == (0, 0)

    inactive = client.get(
        "/inventory/batches",
        params={"product_id": seeded["product_a"], "warehouse_id": seeded["main"], "status": "inactive"},
    ).json()["items"]
    assert [(row["quantity_purchased"], row["quantity_available"]) for row in inactive] == [(10, 0)]

    movements = client.get("/inventory/movements", params={"reference_type": "purchase_void"}).json()
    assert sorted(row["quantity"] for row in movements["items"]) == [4, 10]

    again = client.post(f"/purchases/{purchase['id']}/void", json={})
    assert again.status_code == 422, again.text


def test_void_purchase_refused_once_stock_is_used(test_context, seeded):
    client, _ = test_context
    purchase = client.post("/purchases", json=_purchase_payload(seeded)).json()
    allocate = client.post(
        "/inventory/allocate",
        json={"product_id": seeded["product_a"], "warehouse_id": seeded["main"], "quantity": 2},
    )
    assert allocate.status_code == 200, allocate.text

    res = client.post(f"/purchases/{purchase['id']}/void", json={"reason": "late"})

    assert res.status_code == 422, res.text
    [detail] = res.json()["error"]["details"]
    assert (detail["quantity_purchased"], detail["quantity_available"]) == (10, 8)
    assert client.get(f"/purchases/{purchase['id']}").json()["status"] == "registered"


def test_reconcile_reports_and_fixes_drift(test_context, seeded):
    client, session_local = test_context
    _stock_in(client, seeded["product_a"], seeded["main"], 10, 10.0, "2026-01-01")
    _stock_in(client, seeded["product_b"], seeded["main"], 4, 20.0, "2026-01-01")

    db = session_local()
    try:
        with atomic(db):
            db.execute(
                update(Inventory)
                .where(Inventory.product_id == seeded["product_a"], Inventory.warehouse_id == seeded["main"])
                .values(available_stock=7, reserved_stock=1)
            )
    finally:
        db.close()

    report = client.post("/inventory/reconcile", json={})
    assert report.status_code == 200, report.text
    body = report.json()
    assert (body["checked"], body["drifted"], body["fixed"]) == (2, 1, 0)
    [drifted] = [row for row in body["items"] if not row["in_sync"]]
    assert drifted["product_id"] == seeded["product_a"]
    assert (drifted["ledger_available"], drifted["expected_available"]) == (7, 10)
    assert (drifted["ledger_reserved"], drifted["expected_reserved"]) == (1, 0)
    assert _stock_level(client, seeded["product_a"], seeded["main"]) == (7, 1)

    fixed = client.post("/inventory/reconcile", json={"product_id": seeded["product_a"], "fix": True})
    assert fixed.status_code == 200, fixed.text
    assert fixed.json()["fixed"] == 1
    assert _stock_level(client, seeded["product_a"], seeded["main"]) == (10, 0)

    clean = client.post("/inventory/reconcile", json={}).json()
    assert clean["drifted"] == 0

    db = session_local()
    try:
        audit = db.execute(select(AuditLog).where(AuditLog.action == "inventory.reconcile")).scalar_one()
        assert audit.metadata_json["from_available"] == 7
        assert audit.metadata_json["to_available"] == 10
    finally:
        db.close()


def test_reconcile_counts_pending_reservations(test_context, seeded):
    client, session_local = test_context
    _stock_in(client, seeded["product_a"], seeded["main"], 10, 10.0, "2026-01-01")
    cart_id = client.post("/carts", json={}).json()["id"]
    client.put(f"/carts/{cart_id}/items", json={"product_id": seeded["product_a"], "quantity": 4})
    checkout = client.post(f"/carts/{cart_id}/checkout", json={"customer_name": "Rosa Huaman"})
    assert checkout.status_code == 201, checkout.text

    db = session_local()
    try:
        [row] = stock_service.reconcile_inventory(db, product_id=seeded["product_a"])
        assert (row.ledger_available, row.ledger_reserved) == (6, 4)
        assert (row.expected_available, row.expected_reserved) == (6, 4)
        assert row.in_sync

        batch = db.execute(select(PurchaseBatch).where(PurchaseBatch.product_id == seeded["product_a"])).scalar_one()
        assert batch.quantity_available == 6
    finally:
        db.close()


def _allocate(client, product_id: str, warehouse_id: str, quantity: int) -> dict:
    res = client.post(
        "/inventory/allocate",
        json={"product_id": product_id, "warehouse_id": warehouse_id, "quantity": quantity},
    )
    assert res.status_code == 200, res.text
    return res.json()


def test_manual_allocation_is_held_and_reconciles(test_context, seeded):
    client, session_local = test_context
    _stock_in(client, seeded["product_a"], seeded["main"], 10, 10.0, "2026-01-01")

    held = _allocate(client, seeded["product_a"], seeded["main"], 4)
    assert held["status"] == "held"
    assert held["reservation_code"].startswith("RSV-")
    assert _stock_level(client, seeded["product_a"], seeded["main"]) == (6, 4)

    cart_id = client.post("/carts", json={}).json()["id"]
    client.put(f"/carts/{cart_id}/items", json={"product_id": seeded["product_a"], "quantity": 3})
    assert client.post(f"/carts/{cart_id}/checkout", json={"customer_name": "Rosa Huaman"}).status_code == 201

    db = session_local()
    try:
        [row] = stock_service.reconcile_inventory(db, product_id=seeded["product_a"])
        assert (row.ledger_available, row.ledger_reserved) == (3, 7)
        assert (row.expected_available, row.expected_reserved) == (3, 7)
        assert row.in_sync
    finally:
        db.close()

    fixed = client.post("/inventory/reconcile", json={"fix": True}).json()
    assert (fixed["drifted"], fixed["fixed"]) == (0, 0)
    assert _stock_level(client, seeded["product_a"], seeded["main"]) == (3, 7)


def test_release_reservation_restores_batches_in_reverse(test_context, seeded):
    client, session_local = test_context
    first = _stock_in(client, seeded["product_a"], seeded["main"], 10, 10.0, "2026-01-01")["batch"]["id"]
    second = _stock_in(client, seeded["product_a"], seeded["main"], 10, 12.0, "2026-01-15")["batch"]["id"]

    held = _allocate(client, seeded["product_a"], seeded["main"], 15)
    assert [(item["batch_id"], item["quantity"]) for item in held["batch_consumptions"]] == [(first, 10), (second, 5)]
    assert held["weighted_unit_cost"] == 10.67

    res = client.post(f"/inventory/reservations/{held['reservation_id']}/release", json={"note": "quote expired"})
    assert res.status_code == 200, res.text
    assert res.json()["status"] == "released"
    assert res.json()["closed_at"] is not None
    assert _stock_level(client, seeded["product_a"], seeded["main"]) == (20, 0)

    again = client.post(f"/inventory/reservations/{held['reservation_id']}/release", json={})
    assert again.status_code == 409, again.text
    assert again.json()["error"]["code"] == "reservation_state_conflict"

    db = session_local()
    try:
        restored = db.execute(
            select(StockMovement)
            .where(
                StockMovement.reference_type == "reservation_release",
                StockMovement.reference_id == held["reservation_id"],
            )
        ).scalars().all()
        assert sorted((row.purchase_batch_id, row.quantity) for row in restored) == sorted([(second, 5), (first, 10)])
        batches = {
            row.id: (row.quantity_available, row.status)
            for row in db.execute(select(PurchaseBatch)).scalars().all()
        }
        assert batches == {first: (10, "active"), second: (10, "active")}
        [row] = stock_service.reconcile_inventory(db, product_id=seeded["product_a"])
        assert row.in_sync
    finally:
        db.close()


def test_settle_reservation_drops_reserved_units(test_context, seeded):
    client, session_local = test_context
    _stock_in(client, seeded["product_a"], seeded["main"], 10, 10.0, "2026-01-01")
    held = _allocate(client, seeded["product_a"], seeded["main"], 4)

    res = client.post(f"/inventory/reservations/{held['reservation_id']}/settle", json={})
    assert res.status_code == 200, res.text
    assert res.json()["status"] == "settled"
    assert _stock_level(client, seeded["product_a"], seeded["main"]) == (6, 0)

    detail = client.get(f"/inventory/reservations/{held['reservation_id']}").json()
    assert detail["quantity"] == 4
    assert [item["quantity"] for item in detail["batch_consumptions"]] == [4]

    late_release = client.post(f"/inventory/reservations/{held['reservation_id']}/release", json={})
    assert late_release.status_code == 409
    assert client.get("/inventory/reservations/missing").status_code == 404

    db = session_local()
    try:
        [row] = stock_service.reconcile_inventory(db, product_id=seeded["product_a"])
        assert (row.expected_available, row.expected_reserved) == (6, 0)
        assert row.in_sync
        reservation = db.get(StockReservation, held["reservation_id"])
        assert reservation.closed_at is not None
    finally:
        db.close()


def test_reconcile_fix_reads_figures_after_taking_row_locks(test_context, seeded, monkeypatch):
    client, session_local = test_context
    product_id, warehouse_id = seeded["product_a"], seeded["main"]
    _stock_in(client, product_id, warehouse_id, 20, 10.0, "2026-01-01")

    db = session_local()
    try:
        with atomic(db):
            db.execute(
                update(Inventory)
                .where(Inventory.product_id == product_id, Inventory.warehouse_id == warehouse_id)
                .values(available_stock=19)
            )
    finally:
        db.close()

    real_lock = inventory_service.lock_inventory
    fired = []

    def lock_after_concurrent_allocation(db, product_id, warehouse_id, **kwargs):
        # Another request commits an allocation while this one waits for the row lock.
        if not fired:
            fired.append(True)
            _allocate(client, seeded["product_a"], seeded["main"], 5)
        return real_lock(db, product_id, warehouse_id, **kwargs)

    monkeypatch.setattr(inventory_service, "lock_inventory", lock_after_concurrent_allocation)

    db = session_local()
    try:
        with atomic(db):
            [row] = stock_service.reconcile_inventory(db, product_id=product_id, fix=True)
            assert inventory_service.holds_lock(db, product_id, warehouse_id)
        assert fired
        assert (row.ledger_available, row.ledger_reserved) == (14, 5)
        assert (row.expected_available, row.expected_reserved) == (15, 5)
        assert row.fixed
    finally:
        db.close()

    assert _stock_level(client, product_id, warehouse_id) == (15, 5)


def test_low_stock_lists_rows_at_or_below_threshold(test_context, seeded, monkeypatch):
    client, _ = test_context
    _stock_in(client, seeded["product_a"], seeded["main"], 3, 10.0, "2026-01-01")
    _stock_in(client, seeded["product_b"], seeded["main"], 12, 20.0, "2026-01-01")

    res = client.get("/inventory/low-stock")
    assert res.status_code == 200, res.text
    body = res.json()
    assert [(item["sku"], item["available_stock"], item["threshold"]) for item in body["items"]] == [
        ("MOU-201", 3, settings.low_stock_default_threshold)
    ]
    assert body["pagination"]["total"] == 1

    wider = client.get("/inventory/low-stock", params={"threshold": 12}).json()
    assert [item["sku"] for item in wider["items"]] == ["MOU-201", "TEC-101"]

    monkeypatch.setattr(settings, "low_stock_default_threshold", 2)
    assert client.get("/inventory/low-stock").json()["items"] == []
