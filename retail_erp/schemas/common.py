from typing import Any

from pydantic import BaseModel, ConfigDict


class PaginationMeta(BaseModel):
    total: int
    limit: int
    offset: int
    count: int
    has_next: bool

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "total": 42,
                "limit": 10,
                "offset": 0,
                "count": 10,
                "has_next": True,
            }
        }
    )


def build_pagination(*, total: int, limit: int, offset: int, count: int) -> PaginationMeta:
    return PaginationMeta(
        total=total,
        limit=limit,
        offset=offset,
        count=count,
        has_next=(offset + count) < total,
    )


class ErrorDetailOut(BaseModel):
    code: str
    message: str
    request_id: str
    path: str
    # Validation issues ({field, message, type}) or domain context (line, product_id, requested...).
    details: list[dict[str, Any]] | None = None


class ErrorOut(BaseModel):
    error: ErrorDetailOut

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": {
                    "code": "insufficient_stock",
                    "message": "Insufficient stock. Requested: 15, available: 12",
                    "request_id": "8d8f2b00-6c79-4a45-8ff4-b0a5f2bc4bc2",
                    "path": "/inventory/allocate",
                    "details": [
                        {
                            "product_id": "product-id",
                            "warehouse_id": "warehouse-id",
                            "requested": 15,
                            "available": 12,
                        }
                    ],
                }
            }
        }
    )
