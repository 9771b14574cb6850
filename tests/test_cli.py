import pytest
from click.testing import CliRunner
from sqlalchemy import select, update

from retail_erp import cli as cli_module
from retail_erp.db.unit_of_work import atomic
from retail_erp.models.catalog import Product
from retail_erp.models.inventory import Inventory
from retail_erp.models.order import Order
from retail_erp.models.warehouse import Warehouse


@pytest.fixture()
def runner(test_context, monkeypatch):
    _, session_local = test_context
    monkeypatch.setattr(cli_module, "SessionLocal", session_local)
    return CliRunner()


def test_seed_demo_then_refuses_to_reseed(runner, test_context):
    _, session_local = test_context

    first = runner.invoke(cli_module.cli, ["seed-demo", "--units", "5"])
    assert first.exit_code == 0, first.output
    assert "Seeded 5 products with 10 units each" in first.output

    db = session_local()
    try:
        main = db.execute(select(Warehouse).where(Warehouse.code == "MAIN")).scalar_one()
        laptop = db.execute(select(Product).where(Product.sku == "LAP-001")).scalar_one()
        row = db.execute(
            select(Inventory).where(Inventory.product_id == laptop.id, Inventory.warehouse_id == main.id)
        ).scalar_one()
        assert (row.available_stock, row.reserved_stock) == (10, 0)
    finally:
        db.close()

    second = runner.invoke(cli_module.cli, ["seed-demo"])
    assert second.exit_code == 1
    assert "already present" in second.output


def test_simulate_keeps_ledger_in_sync(runner, test_context):
    _, session_local = test_context
    assert runner.invoke(cli_module.cli, ["seed-demo", "--units", "20"]).exit_code == 0

    result = runner.invoke(cli_module.cli, ["simulate", "--count", "6", "--seed", "7", "--confirm-ratio", "0.5"])

    assert result.exit_code == 0, result.output
    assert "Simulated 6 customers" in result.output

    db = session_local()
    try:
        statuses = set(db.execute(select(Order.status)).scalars().all())
        assert statuses <= {"paid", "cancelled"}
    finally:
        db.close()

    reconcile = runner.invoke(cli_module.cli, ["reconcile"])
    assert reconcile.exit_code == 0, reconcile.output
    assert "all in sync" in reconcile.output


def test_reconcile_exits_non_zero_on_drift_until_fixed(runner, test_context):
    _, session_local = test_context
    assert runner.invoke(cli_module.cli, ["seed-demo", "--units", "3"]).exit_code == 0

    db = session_local()
    try:
        with atomic(db):
            laptop = db.execute(select(Product).where(Product.sku == "LAP-001")).scalar_one()
            db.execute(update(Inventory).where(Inventory.product_id == laptop.id).values(available_stock=1))
    finally:
        db.close()

    report = runner.invoke(cli_module.cli, ["reconcile"])
    assert report.exit_code == 1
    assert "1 of 5 rows drifted." in report.output

    fixed = runner.invoke(cli_module.cli, ["reconcile", "--fix"])
    assert fixed.exit_code == 0, fixed.output
    assert "were fixed" in fixed.output

    assert "all in sync" in runner.invoke(cli_module.cli, ["reconcile"]).output


def test_expire_orders_command_reports_count(runner):
    assert runner.invoke(cli_module.cli, ["seed-demo", "--units", "3"]).exit_code == 0

    result = runner.invoke(cli_module.cli, ["expire-orders", "--timeout-minutes", "30"])

    assert result.exit_code == 0, result.output
    assert "Expired 0 pending orders." in result.output
