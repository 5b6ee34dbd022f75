from __future__ import annotations

from typing import Any


class StockError(Exception):
    """Base class for every error the stock engine reports to callers.

    ``context`` carries the values a client needs to render a message
    (equipment id, requested and available quantities, ...). It is merged
    into the JSON error body by the API layer.
    """

    status_code = 400
    code = "stock_error"
    retryable = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_payload(self) -> dict[str, Any]:
        payload = {"detail": self.message, "code": self.code}
        payload.update(self.context)
        return payload


class NotFoundError(StockError):
    status_code = 404
    code = "not_found"


class InsufficientStockError(StockError):
    status_code = 409
    code = "insufficient_stock"

    def __init__(self, equipment_id: int, requested: int, available: int, message: str | None = None):
        shortfall = max(0, int(requested) - int(available))
        super().__init__(
            message or f"Insufficient stock for equipment {equipment_id}: requested {requested}, available {available}.",
            equipmentID=equipment_id,
            requested=int(requested),
            available=int(available),
            shortfall=shortfall,
        )
        self.equipment_id = equipment_id
        self.requested = int(requested)
        self.available = int(available)
        self.shortfall = shortfall


class InvalidEquipmentStateError(StockError):
    status_code = 409
    code = "invalid_equipment_state"


class InvalidQuantityError(StockError):
    code = "invalid_quantity"


class OverReleaseError(InvalidQuantityError):
    status_code = 409
    code = "over_release"

    def __init__(self, outstanding: int, requested: int, message: str | None = None, **context: Any):
        super().__init__(
            message or f"Cannot release {requested} units: only {outstanding} outstanding.",
            outstanding=int(outstanding),
            requested=int(requested),
            **context,
        )
        self.outstanding = int(outstanding)
        self.requested = int(requested)


class InvalidDateRangeError(StockError):
    code = "invalid_date_range"


class MissingDamageDescriptionError(StockError):
    code = "missing_damage_description"


class InvalidConditionError(StockError):
    code = "invalid_condition"


class InvalidRentalStateError(StockError):
    status_code = 409
    code = "invalid_rental_state"


class InvalidAllocationStateError(StockError):
    status_code = 409
    code = "invalid_allocation_state"


class ConcurrencyTimeoutError(StockError):
    status_code = 503
    code = "concurrency_timeout"
    retryable = True


class BatchNotFoundError(NotFoundError):
    code = "batch_not_found"


class BatchIdCollisionError(StockError):
    status_code = 503
    code = "batch_id_collision"
    retryable = True


class ValidationFailedError(StockError):
    code = "validation_failed"


class DuplicateNumberError(StockError):
    status_code = 409
    code = "duplicate_number"


class BatchKindConflictError(StockError):
    status_code = 409
    code = "batch_kind_conflict"


class InvalidInventoryCheckStateError(StockError):
    status_code = 409
    code = "invalid_inventory_check_state"
