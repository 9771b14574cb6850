import os
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")

import retail_erp.models  # noqa: F401
from retail_erp.core.config import settings
from retail_erp.core.deps import get_db
from retail_erp.core.id_utils import new_id
from retail_erp.db.base import Base
from retail_erp.db.unit_of_work import atomic
from retail_erp.main import app
from retail_erp.models.catalog import Category, PriceList, Product, ProductPrice
from retail_erp.models.warehouse import Warehouse
from retail_erp.services import catalog_service


@pytest.fixture()
def test_context():
    original_shipping = settings.default_shipping_cost

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    def override_get_db():
        db = session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    catalog_service.invalidate_category_margins()

    with TestClient(app) as client:
        yield client, session_local

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)
    catalog_service.invalidate_category_margins()
    settings.default_shipping_cost = original_shipping


@pytest.fixture()
def seeded(test_context):
    """
    Two warehouses (MAIN sells online), a two-level category tree and two priced products.

    Tecnologia sets a 30% minimum margin; Accesorios inherits it. Product A sells at
    20.00 and product B at 35.00 on the default price list.
    """
    _, session_local = test_context
    db = session_local()
    try:
        with atomic(db):
            root = Category(
                id=new_id(),
                name="Tecnologia",
                min_margin_pct=Decimal("30.00"),
                normal_margin_pct=Decimal("45.00"),
            )
            child = Category(id=new_id(), parent_id=root.id, name="Accesorios")
            main = Warehouse(
                id=new_id(),
                code="MAIN",
                name="Almacen principal",
                is_active=True,
                visible_online=True,
                is_main=True,
                picking_priority=10,
            )
            north = Warehouse(
                id=new_id(),
                code="NORTE",
                name="Almacen norte",
                is_active=True,
                visible_online=False,
                is_main=False,
            )
            price_list = PriceList(id=new_id(), code=settings.default_price_list_code, name="Precio publico")
            db.add_all([root, child, main, north, price_list])
            db.flush()

            product_a = Product(id=new_id(), sku="MOU-201", name="Mouse inalambrico", category_id=child.id)
            product_b = Product(id=new_id(), sku="TEC-101", name="Teclado mecanico", category_id=root.id)
            db.add_all([product_a, product_b])
            db.flush()
            db.add_all(
                [
                    ProductPrice(
                        id=new_id(),
                        product_id=product_a.id,
                        price_list_id=price_list.id,
                        price=Decimal("20.00"),
                    ),
                    ProductPrice(
                        id=new_id(),
                        product_id=product_b.id,
                        price_list_id=price_list.id,
                        price=Decimal("35.00"),
                    ),
                ]
            )

            ids = {
                "root_category": root.id,
                "child_category": child.id,
                "main": main.id,
                "north": north.id,
                "price_list": price_list.id,
                "product_a": product_a.id,
                "product_b": product_b.id,
            }
    finally:
        db.close()
    return ids
