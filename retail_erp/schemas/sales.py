from datetime import date, datetime

from pydantic import BaseModel

from retail_erp.schemas.common import PaginationMeta


class SaleItemOut(BaseModel):
    product_id: str
    quantity: int
    unit_price: float
    line_total: float
    unit_cost: float
    cost_total: float
    margin_pct: float
    below_min_margin: bool


class PaymentOut(BaseModel):
    id: str
    amount: float
    currency: str
    method: str
    reference: str | None = None
    status: str
    paid_at: datetime


class SaleOut(BaseModel):
    id: str
    code: str
    order_id: str | None = None
    customer_name: str
    warehouse_id: str
    currency: str
    subtotal: float
    tax: float
    total: float
    cost_total: float
    margin_total: float
    payment_status: str
    created_at: datetime


class SaleDetailOut(SaleOut):
    items: list[SaleItemOut]
    payments: list[PaymentOut]


class SaleListOut(BaseModel):
    pagination: PaginationMeta
    start_date: date | None = None
    end_date: date | None = None
    items: list[SaleOut]
