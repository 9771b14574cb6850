from datetime import date, datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from retail_erp.schemas.common import PaginationMeta

MovementType = Literal["in", "out"]
BatchStatus = Literal["active", "inactive", "depleted"]
ReservationStatus = Literal["held", "released", "settled"]


class AllocateIn(BaseModel):
    product_id: str
    warehouse_id: str
    quantity: int = Field(gt=0)
    reference_id: str | None = Field(default=None, max_length=36)
    note: str | None = Field(default=None, max_length=255)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "product_id": "product-id-here",
                "warehouse_id": "warehouse-id-here",
                "quantity": 15,
            }
        }
    )


class BatchConsumptionOut(BaseModel):
    batch_id: str
    quantity: int
    unit_cost: float


class AllocationOut(BaseModel):
    product_id: str
    warehouse_id: str
    quantity: int
    batch_consumptions: list[BatchConsumptionOut]
    total_cost: float
    weighted_unit_cost: float


class ReservationAllocationOut(AllocationOut):
    reservation_id: str
    reservation_code: str
    status: ReservationStatus


class StockInIn(BaseModel):
    product_id: str
    warehouse_id: str
    quantity: int = Field(gt=0)
    unit_cost: Decimal = Field(ge=0)
    distribution_price: Decimal | None = Field(default=None, ge=0)
    purchase_date: date | None = None
    expiry_date: date | None = None
    note: str | None = Field(default=None, max_length=255)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "product_id": "product-id-here",
                "warehouse_id": "warehouse-id-here",
                "quantity": 20,
                "unit_cost": 10.0,
                "distribution_price": 12.5,
                "note": "Opening count",
            }
        }
    )


class AdjustOutIn(BaseModel):
    product_id: str
    warehouse_id: str
    quantity: int = Field(gt=0)
    reason: str = Field(min_length=3, max_length=255)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "product_id": "product-id-here",
                "warehouse_id": "warehouse-id-here",
                "quantity": 2,
                "reason": "damaged_stock",
            }
        }
    )


class TransferIn(BaseModel):
    product_id: str
    from_warehouse_id: str
    to_warehouse_id: str
    quantity: int = Field(gt=0)
    note: str | None = Field(default=None, max_length=255)

    @model_validator(mode="after")
    def validate_distinct_warehouses(self):
        if self.from_warehouse_id == self.to_warehouse_id:
            raise ValueError("from_warehouse_id and to_warehouse_id must differ")
        return self


class TransferOut(BaseModel):
    transfer_id: str
    product_id: str
    from_warehouse_id: str
    to_warehouse_id: str
    quantity: int
    destination_batch_ids: list[str]
    weighted_unit_cost: float


class BatchOut(BaseModel):
    id: str
    product_id: str
    warehouse_id: str
    purchase_id: str | None = None
    batch_code: str
    purchase_date: date
    expiry_date: date | None = None
    quantity_purchased: int
    quantity_available: int
    purchase_price: float
    distribution_price: float
    status: BatchStatus


class StockInOut(BaseModel):
    batch: BatchOut
    available_stock: int
    reserved_stock: int


class StockLevelOut(BaseModel):
    product_id: str
    warehouse_id: str
    available_stock: int
    reserved_stock: int
    last_movement_at: datetime | None = None


class ProductStockOut(BaseModel):
    product_id: str
    total_available: int
    total_reserved: int
    warehouses: list[StockLevelOut]


class BatchListOut(BaseModel):
    items: list[BatchOut]


class StockMovementOut(BaseModel):
    id: str
    product_id: str
    warehouse_id: str
    purchase_batch_id: str | None = None
    type: MovementType
    quantity: int
    unit_cost: float | None = None
    reference_type: str
    reference_id: str | None = None
    note: str | None = None
    moved_at: datetime


class StockMovementListOut(BaseModel):
    items: list[StockMovementOut]
    pagination: PaginationMeta


class ReconcileIn(BaseModel):
    product_id: str | None = None
    warehouse_id: str | None = None
    fix: bool = False


class ReconcileRowOut(BaseModel):
    product_id: str
    warehouse_id: str
    ledger_available: int
    ledger_reserved: int
    expected_available: int
    expected_reserved: int
    in_sync: bool
    fixed: bool


class ReconcileOut(BaseModel):
    checked: int
    drifted: int
    fixed: int
    items: list[ReconcileRowOut]


class ReservationActionIn(BaseModel):
    note: str | None = Field(default=None, max_length=255)


class ReservationOut(BaseModel):
    id: str
    code: str
    product_id: str
    warehouse_id: str
    quantity: int
    status: ReservationStatus
    reference_id: str | None = None
    note: str | None = None
    batch_consumptions: list[BatchConsumptionOut]
    created_at: datetime | None = None
    closed_at: datetime | None = None


class LowStockOut(BaseModel):
    product_id: str
    sku: str
    product_name: str
    warehouse_id: str
    available_stock: int
    reserved_stock: int
    threshold: int


class LowStockListOut(BaseModel):
    items: list[LowStockOut]
    pagination: PaginationMeta
