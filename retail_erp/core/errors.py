from typing import Any


class DomainError(Exception):
    """Base class for business-rule failures rendered as structured API errors."""

    code = "domain_error"
    status_code = 400
    integrity_alarm = False

    def __init__(self, message: str, *, details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(DomainError):
    code = "not_found"
    status_code = 404


class DomainValidationError(DomainError):
    code = "validation_error"
    status_code = 422


class InsufficientStockError(DomainError):
    """Requested quantity exceeds the ledger's available stock. Recoverable by the caller."""

    code = "insufficient_stock"
    status_code = 422

    def __init__(
        self,
        *,
        product_id: str,
        warehouse_id: str,
        requested: int,
        available: int,
        message: str | None = None,
    ) -> None:
        self.product_id = product_id
        self.warehouse_id = warehouse_id
        self.requested = requested
        self.available = available
        super().__init__(
            message or f"Insufficient stock. Requested: {requested}, available: {available}",
            details=[
                {
                    "product_id": product_id,
                    "warehouse_id": warehouse_id,
                    "requested": requested,
                    "available": available,
                }
            ],
        )


class InventoryIntegrityError(DomainError):
    """Ledger and batch store disagree. Never user-recoverable."""

    code = "inventory_integrity"
    status_code = 500
    integrity_alarm = True


class InsufficientBatchStockError(InventoryIntegrityError):
    code = "insufficient_batch_stock"

    def __init__(self, *, batch_id: str, requested: int, available: int) -> None:
        self.batch_id = batch_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Batch {batch_id} has {available} units, cannot consume {requested}",
            details=[{"batch_id": batch_id, "requested": requested, "available": available}],
        )


class InventoryInconsistencyError(InventoryIntegrityError):
    code = "inventory_inconsistency"

    def __init__(
        self,
        *,
        product_id: str,
        warehouse_id: str,
        ledger_available: int,
        batches_available: int,
        requested: int,
    ) -> None:
        self.product_id = product_id
        self.warehouse_id = warehouse_id
        self.ledger_available = ledger_available
        self.batches_available = batches_available
        self.requested = requested
        super().__init__(
            "Inventory ledger and batch totals have drifted",
            details=[
                {
                    "product_id": product_id,
                    "warehouse_id": warehouse_id,
                    "ledger_available": ledger_available,
                    "batches_available": batches_available,
                    "requested": requested,
                }
            ],
        )


class InventoryLockError(InventoryIntegrityError):
    code = "inventory_lock_not_held"


class OrderStateError(DomainError):
    code = "order_state_conflict"
    status_code = 409

    def __init__(self, message: str, *, order_id: str, status: str) -> None:
        self.order_id = order_id
        self.status = status
        super().__init__(message, details=[{"order_id": order_id, "status": status}])


class OrderNotConfirmableError(OrderStateError):
    code = "order_not_confirmable"


class OrderNotCancellableError(OrderStateError):
    code = "order_not_cancellable"


class ReservationStateError(DomainError):
    code = "reservation_state_conflict"
    status_code = 409

    def __init__(self, message: str, *, reservation_id: str, status: str) -> None:
        self.reservation_id = reservation_id
        self.status = status
        super().__init__(message, details=[{"reservation_id": reservation_id, "status": status}])


class CheckoutLineError(DomainError):
    """One cart line could not be allocated; the whole checkout was rolled back."""

    code = "checkout_line_failed"

    def __init__(self, *, line_number: int, product_id: str, cause: DomainError) -> None:
        self.line_number = line_number
        self.product_id = product_id
        self.cause = cause
        self.status_code = cause.status_code
        self.integrity_alarm = cause.integrity_alarm
        cause_details = cause.details[0] if cause.details else {}
        super().__init__(
            f"Checkout failed at line {line_number}: {cause.message}",
            details=[
                {
                    "line": line_number,
                    "product_id": product_id,
                    "reason": cause.code,
                    **cause_details,
                }
            ],
        )
