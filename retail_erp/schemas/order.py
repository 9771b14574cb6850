from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from retail_erp.schemas.common import PaginationMeta

PaymentMethod = Literal["card", "transfer", "cash", "wallet"]
FulfillmentStatus = Literal["preparing", "shipped", "delivered"]


class OrderConfirmIn(BaseModel):
    payment_method: Optional[PaymentMethod] = None
    transaction_ref: Optional[str] = Field(default=None, max_length=120)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "payment_method": "card",
                "transaction_ref": "ch_3PqZ2x",
            }
        }
    )


class OrderCancelIn(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=255)


class OrderStatusUpdateIn(BaseModel):
    status: FulfillmentStatus
    note: Optional[str] = Field(default=None, max_length=255)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "shipped",
                "note": "Handed to courier",
            }
        }
    )


class ExpirePendingIn(BaseModel):
    timeout_minutes: Optional[int] = Field(default=None, ge=1, le=10080)


class ExpirePendingOut(BaseModel):
    expired: int
    order_ids: list[str]


class OrderAllocationOut(BaseModel):
    purchase_batch_id: str
    sequence: int
    quantity: int
    unit_cost: float


class OrderItemOut(BaseModel):
    id: str
    product_id: str
    warehouse_id: str
    quantity: int
    unit_price: float
    line_total: float
    unit_cost: float
    allocations: list[OrderAllocationOut]


class OrderStatusHistoryOut(BaseModel):
    from_status: str | None = None
    to_status: str
    note: str | None = None
    created_at: datetime


class OrderOut(BaseModel):
    id: str
    code: str
    status: str
    customer_name: str
    customer_doc_type: str | None = None
    customer_doc_number: str | None = None
    customer_email: str | None = None
    customer_phone: str | None = None
    shipping_address: str | None = None
    shipping_district: str | None = None
    shipping_city: str | None = None
    warehouse_id: str
    currency: str
    subtotal: float
    tax: float
    shipping_cost: float
    total: float
    payment_method: str | None = None
    payment_reference: str | None = None
    sale_id: str | None = None
    note: str | None = None
    created_at: datetime
    confirmed_at: datetime | None = None
    cancelled_at: datetime | None = None


class OrderDetailOut(OrderOut):
    items: list[OrderItemOut]
    history: list[OrderStatusHistoryOut]


class OrderListOut(BaseModel):
    pagination: PaginationMeta
    start_date: date | None = None
    end_date: date | None = None
    status: str | None = None
    items: list[OrderOut]
