from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PurchaseLineIn(BaseModel):
    product_id: str
    quantity: int = Field(gt=0)
    unit_cost: Decimal = Field(ge=0)
    distribution_price: Decimal | None = Field(default=None, ge=0)
    expiry_date: date | None = None


class PurchaseCreateIn(BaseModel):
    supplier_name: str = Field(min_length=1, max_length=160)
    supplier_doc_number: str | None = Field(default=None, max_length=20)
    warehouse_id: str
    series: str = Field(min_length=1, max_length=10)
    number: str = Field(min_length=1, max_length=20)
    purchase_date: date | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    note: str | None = Field(default=None, max_length=255)
    lines: list[PurchaseLineIn] = Field(min_length=1)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "supplier_name": "Distribuidora Andina SAC",
                "supplier_doc_number": "20512345678",
                "warehouse_id": "warehouse-id-here",
                "series": "F001",
                "number": "000123",
                "purchase_date": "2026-03-01",
                "lines": [
                    {"product_id": "product-id-here", "quantity": 10, "unit_cost": 10.0, "distribution_price": 12.0}
                ],
            }
        }
    )

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, value: str | None) -> str | None:
        return value.upper() if value else value


class PurchaseVoidIn(BaseModel):
    reason: str | None = Field(default=None, max_length=255)


class PurchaseDetailOut(BaseModel):
    product_id: str
    quantity: int
    unit_cost: float
    distribution_price: float
    line_total: float
    expiry_date: date | None = None


class PurchaseOut(BaseModel):
    id: str
    supplier_name: str
    supplier_doc_number: str | None = None
    warehouse_id: str
    series: str
    number: str
    purchase_date: date
    currency: str
    subtotal: float
    tax: float
    total: float
    status: str
    note: str | None = None
    created_at: datetime
    voided_at: datetime | None = None
    details: list[PurchaseDetailOut]
    batch_ids: list[str]
