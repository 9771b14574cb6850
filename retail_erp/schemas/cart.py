from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class CartCreateIn(BaseModel):
    customer_ref: str | None = Field(default=None, max_length=120)


class CartItemIn(BaseModel):
    product_id: str
    quantity: int = Field(ge=0, description="Zero removes the line.")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "product_id": "product-id-here",
                "quantity": 2,
            }
        }
    )


class CartItemOut(BaseModel):
    product_id: str
    quantity: int
    unit_price: float
    line_total: float


class CartTotalsOut(BaseModel):
    subtotal: float
    tax: float
    shipping_cost: float
    total: float
    items_count: int


class CartOut(BaseModel):
    id: str
    customer_ref: str | None = None
    status: str
    items: list[CartItemOut]
    totals: CartTotalsOut
    created_at: datetime
    converted_at: datetime | None = None
