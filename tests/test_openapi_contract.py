import json
from pathlib import Path

from sqlalchemy import update

from retail_erp.db.unit_of_work import atomic
from retail_erp.main import app
from retail_erp.models.inventory import PurchaseBatch


def test_openapi_paths_snapshot():
    snapshot_path = Path(__file__).parent / "snapshots" / "openapi_paths_snapshot.json"
    expected_paths = json.loads(snapshot_path.read_text(encoding="utf-8"))
    actual_paths = sorted(app.openapi()["paths"].keys())
    assert actual_paths == expected_paths


def test_health_and_request_id_header(test_context):
    client, _ = test_context

    res = client.get("/health", headers={"X-Request-ID": "req-123"})

    assert res.status_code == 200
    assert res.json() == {"ok": True}
    assert res.headers["X-Request-ID"] == "req-123"
    assert int(res.headers["X-API-Timeout-Hint-Ms"]) > 0
    assert client.get("/ready").json() == {"ok": True}


def test_not_found_uses_error_envelope(test_context):
    client, _ = test_context

    res = client.get("/orders/does-not-exist", headers={"X-Request-ID": "req-404"})

    assert res.status_code == 404
    assert res.json() == {
        "error": {
            "code": "not_found",
            "message": "Order not found: does-not-exist",
            "request_id": "req-404",
            "path": "/orders/does-not-exist",
            "details": None,
        }
    }


def test_insufficient_stock_envelope_carries_quantities(test_context, seeded):
    client, _ = test_context

    res = client.post(
        "/inventory/allocate",
        json={"product_id": seeded["product_a"], "warehouse_id": seeded["main"], "quantity": 15},
    )

    assert res.status_code == 422, res.text
    error = res.json()["error"]
    assert error["code"] == "insufficient_stock"
    assert error["message"] == "Insufficient stock. Requested: 15, available: 0"
    assert error["details"] == [
        {
            "product_id": seeded["product_a"],
            "warehouse_id": seeded["main"],
            "requested": 15,
            "available": 0,
        }
    ]


def test_request_validation_envelope_lists_fields(test_context, seeded):
    client, _ = test_context

    res = client.post(
        "/inventory/allocate",
        json={"product_id": seeded["product_a"], "warehouse_id": seeded["main"], "quantity": 0},
    )

    assert res.status_code == 422
    error = res.json()["error"]
    assert error["code"] == "validation_error"
    assert error["message"] == "Validation failed"
    assert [detail["field"] for detail in error["details"]] == ["quantity"]


def test_integrity_errors_hide_internals(test_context, seeded):
    client, session_local = test_context
    stock = client.post(
        "/inventory/stock-in",
        json={"product_id": seeded["product_a"], "warehouse_id": seeded["main"], "quantity": 6, "unit_cost": 10},
    )
    assert stock.status_code == 200, stock.text

    db = session_local()
    try:
        with atomic(db):
            db.execute(
                update(PurchaseBatch)
                .where(PurchaseBatch.id == stock.json()["batch"]["id"])
                .values(quantity_available=1)
            )
    finally:
        db.close()

    res = client.post(
        "/inventory/allocate",
        json={"product_id": seeded["product_a"], "warehouse_id": seeded["main"], "quantity": 4},
    )

    assert res.status_code == 500
    error = res.json()["error"]
    assert error["code"] == "inventory_inconsistency"
    assert error["message"] == "Inventory data integrity error. The operation was aborted."
    assert error["details"] is None

    levels = client.get(f"/inventory/stock/{seeded['product_a']}").json()
    assert (levels["total_available"], levels["total_reserved"]) == (6, 0)
