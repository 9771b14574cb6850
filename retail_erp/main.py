from sqlalchemy import text

from retail_erp.core.errors import DomainError
from retail_erp.core.observability import (
    domain_exception_handler,
    http_exception_handler,
    request_logging_middleware,
    setup_observability,
    unhandled_exception_handler,
    validation_exception_handler,
)
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from retail_erp.core.config import settings
from retail_erp.db.session import engine
from retail_erp.routers import carts, inventory, orders, purchases, sales

app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description=(
        "Inventory allocation and order fulfillment backend.\n\n"
        "Quick test flow:\n"
        "1. Receive stock with `POST /purchases` or `POST /inventory/stock-in`.\n"
        "2. Open a cart with `POST /carts` and add lines with `PUT /carts/{id}/items`.\n"
        "3. `POST /carts/{id}/checkout` reserves stock FIFO and creates a pending order.\n"
        "4. `POST /orders/{id}/confirm` turns it into a sale, `POST /orders/{id}/cancel` releases it."
    ),
    swagger_ui_parameters={
        "displayRequestDuration": True,
        "defaultModelsExpandDepth": 1,
    },
    openapi_tags=[
        {"name": "health", "description": "Service status and quick links."},
        {"name": "inventory", "description": "Stock levels, batches, movements, allocation and adjustments."},
        {"name": "carts", "description": "Shopping carts and checkout."},
        {"name": "orders", "description": "Order lifecycle: confirm, cancel, expire and fulfillment."},
        {"name": "sales", "description": "Sales with FIFO cost and margin."},
        {"name": "purchases", "description": "Supplier purchases that create batches."},
    ],
)

setup_observability()
app.middleware("http")(request_logging_middleware)
app.add_exception_handler(DomainError, domain_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

cors_origins = settings.cors_origins or ["http://localhost:3000"]
allow_all_origins = "*" in cors_origins
env_value = settings.env.lower().strip()
allow_origin_regex = settings.cors_origin_regex

if (
    not allow_origin_regex
    and env_value in {"dev", "development", "staging", "stage"}
):
    # Local tooling serves the storefront from dynamic localhost ports.
    allow_origin_regex = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if allow_all_origins else cors_origins,
    allow_origin_regex=allow_origin_regex,
    allow_credentials=not allow_all_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(inventory.router)
app.include_router(carts.router)
app.include_router(orders.router)
app.include_router(sales.router)
app.include_router(purchases.router)


@app.get("/", tags=["health"])
def root():
    return {
        "app": settings.app_name,
        "docs": "/docs",
        "redoc": "/redoc",
        "health": "/health",
        "ready": "/ready",
    }


@app.get("/health", tags=["health"])
def health():
    return {"ok": True}


@app.get("/ready", tags=["health"])
def ready():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        return {"ok": False}
    return {"ok": True}
