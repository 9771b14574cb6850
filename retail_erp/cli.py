import random
from datetime import date, timedelta
from decimal import Decimal

import click
from sqlalchemy import select

from retail_erp.core.config import settings
from retail_erp.core.errors import DomainError
from retail_erp.core.id_utils import new_id
from retail_erp.core.observability import setup_observability
from retail_erp.db.session import SessionLocal
from retail_erp.db.unit_of_work import atomic
from retail_erp.models.catalog import Category, PriceList, Product, ProductPrice
from retail_erp.models.warehouse import Warehouse
from retail_erp.schemas.checkout import CheckoutIn
from retail_erp.services import cart_service, catalog_service, inventory_service, order_service, stock_service
from retail_erp.services.purchase_service import PurchaseData, PurchaseLine, create_purchase

DEMO_PRODUCTS = [
    ("LAP-001", "Laptop 14 pulgadas", Decimal("1800.00"), Decimal("2399.00")),
    ("MON-024", "Monitor 24 pulgadas", Decimal("420.00"), Decimal("599.00")),
    ("TEC-101", "Teclado mecanico", Decimal("95.00"), Decimal("159.00")),
    ("MOU-201", "Mouse inalambrico", Decimal("28.00"), Decimal("49.90")),
    ("AUD-301", "Audifonos bluetooth", Decimal("110.00"), Decimal("189.00")),
]


@click.group()
def cli() -> None:
    """Retail ERP inventory and order tools."""
    setup_observability()


@cli.command("seed-demo")
@click.option("--units", default=40, show_default=True, type=int, help="Units received per product and batch.")
def seed_demo(units: int) -> None:
    """Create a demo catalog, warehouses, prices and two purchase batches per product."""
    with SessionLocal() as db:
        if db.execute(select(Warehouse).where(Warehouse.code == "MAIN")).scalar_one_or_none():
            raise click.ClickException("Demo data already present (warehouse MAIN exists).")

        with atomic(db):
            root = Category(id=new_id(), name="Tecnologia", min_margin_pct=Decimal("15.00"), normal_margin_pct=Decimal("30.00"))
            accessories = Category(id=new_id(), parent_id=root.id, name="Accesorios", min_margin_pct=Decimal("25.00"))
            main = Warehouse(
                id=new_id(), code="MAIN", name="Almacen principal",
                is_active=True, visible_online=True, is_main=True, picking_priority=10,
            )
            secondary = Warehouse(
                id=new_id(), code="NORTE", name="Almacen norte",
                is_active=True, visible_online=False, is_main=False, picking_priority=1,
            )
            price_list = PriceList(id=new_id(), code=settings.default_price_list_code, name="Precio publico")
            db.add_all([root, accessories, main, secondary, price_list])
            db.flush()

            lines_first: list[PurchaseLine] = []
            lines_second: list[PurchaseLine] = []
            for index, (sku, name, cost, price) in enumerate(DEMO_PRODUCTS):
                product = Product(
                    id=new_id(),
                    sku=sku,
                    name=name,
                    category_id=root.id if index < 2 else accessories.id,
                )
                db.add(product)
                db.add(ProductPrice(id=new_id(), product_id=product.id, price_list_id=price_list.id, price=price))
                lines_first.append(PurchaseLine(product_id=product.id, quantity=units, unit_cost=cost))
                lines_second.append(
                    PurchaseLine(product_id=product.id, quantity=units, unit_cost=(cost * Decimal("1.08")))
                )
            db.flush()

            today = date.today()
            create_purchase(
                db,
                PurchaseData(
                    supplier_name="Distribuidora Andina SAC",
                    supplier_doc_number="20512345678",
                    warehouse_id=main.id,
                    series="F001",
                    number="000001",
                    purchase_date=today - timedelta(days=30),
                    lines=lines_first,
                ),
            )
            create_purchase(
                db,
                PurchaseData(
                    supplier_name="Distribuidora Andina SAC",
                    supplier_doc_number="20512345678",
                    warehouse_id=main.id,
                    series="F001",
                    number="000002",
                    purchase_date=today - timedelta(days=5),
                    lines=lines_second,
                ),
            )

    click.echo(f"Seeded {len(DEMO_PRODUCTS)} products with {units * 2} units each in warehouse MAIN.")


@cli.command("simulate")
@click.option("--count", default=20, show_default=True, type=int, help="Number of customers to simulate.")
@click.option("--confirm-ratio", default=0.7, show_default=True, type=float, help="Share of orders that get paid.")
@click.option("--seed", default=None, type=int, help="Random seed for repeatable runs.")
def simulate(count: int, confirm_ratio: float, seed: int | None) -> None:
    """Run carts through checkout and then confirm or cancel each order."""
    rng = random.Random(seed)
    confirmed = cancelled = failed = 0

    with SessionLocal() as db:
        warehouse = catalog_service.get_sales_warehouse(db)
        if warehouse is None:
            raise click.ClickException("No sales warehouse configured. Run seed-demo first.")
        product_ids = list(
            db.execute(select(Product.id).where(Product.is_active.is_(True)).order_by(Product.sku)).scalars().all()
        )
        if not product_ids:
            raise click.ClickException("No active products found.")

        for index in range(count):
            customer_ref = f"sim-{index + 1:04d}"
            try:
                with atomic(db):
                    cart = cart_service.get_or_create_cart(db, customer_ref)
                    picks = rng.sample(product_ids, k=min(len(product_ids), rng.randint(1, 3)))
                    for product_id in picks:
                        in_stock = inventory_service.get_available_stock(db, product_id, warehouse.id)
                        if in_stock > 0:
                            cart_service.add_or_update_item(db, cart, product_id, min(in_stock, rng.randint(1, 3)))
                    payload = CheckoutIn.model_validate(
                        {"customer_name": f"Cliente {index + 1}", "address": "Av. Simulada 123", "city": "Lima"}
                    )
                    order = cart_service.checkout(db, cart, payload.customer, payload.address)
                    order_id = order.id

                with atomic(db):
                    if rng.random() < confirm_ratio:
                        order_service.confirm_order(db, order_id, "card", f"SIM-{index + 1:04d}")
                        confirmed += 1
                    else:
                        order_service.cancel_order(db, order_id, "Simulated abandonment")
                        cancelled += 1
            except DomainError as exc:
                failed += 1
                click.echo(f"[{customer_ref}] {exc.code}: {exc.message}", err=True)

    click.echo(f"Simulated {count} customers: {confirmed} confirmed, {cancelled} cancelled, {failed} failed.")


@cli.command("reconcile")
@click.option("--product-id", default=None, help="Limit to one product.")
@click.option("--warehouse-id", default=None, help="Limit to one warehouse.")
@click.option("--fix", is_flag=True, default=False, help="Rewrite drifted ledger rows.")
def reconcile(product_id: str | None, warehouse_id: str | None, fix: bool) -> None:
    """Compare ledger counters with batch and reservation totals."""
    with SessionLocal() as db:
        with atomic(db):
            rows = stock_service.reconcile_inventory(db, product_id=product_id, warehouse_id=warehouse_id, fix=fix)

    drifted = [row for row in rows if not row.in_sync]
    if not drifted:
        click.echo(f"{len(rows)} ledger rows checked, all in sync.")
        return

    click.echo(f"{'Product':<38} {'Warehouse':<38} {'Avail':>12} {'Reserved':>12}")
    click.echo("-" * 104)
    for row in drifted:
        click.echo(
            f"{row.product_id:<38} {row.warehouse_id:<38} "
            f"{row.ledger_available:>5}->{row.expected_available:<5} "
            f"{row.ledger_reserved:>5}->{row.expected_reserved:<5}"
        )
    click.echo(f"{len(drifted)} of {len(rows)} rows drifted{' and were fixed' if fix else ''}.")
    if not fix:
        raise SystemExit(1)


@cli.command("expire-orders")
@click.option("--timeout-minutes", default=None, type=int, help="Override the configured pending timeout.")
def expire_orders(timeout_minutes: int | None) -> None:
    """Cancel pending orders older than the payment timeout."""
    with SessionLocal() as db:
        with atomic(db):
            expired_ids = order_service.expire_pending_orders(db, timeout_minutes)
    click.echo(f"Expired {len(expired_ids)} pending orders.")


if __name__ == "__main__":
    cli()
