from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from rental_stock.models.stock_models import EquipmentLine, RentalItem, ReturnRecord, Sale, WriteOff
from rental_stock.services.errors import NotFoundError

OUTSTANDING_RENTAL_STATES = ("created", "issued")
PENDING_STATE = "pending"


@dataclass(frozen=True)
class StockSnapshot:
    equipment_id: int
    total_stock: int
    rented: int
    pending_sale: int
    pending_write_off: int

    @property
    def outstanding_quantity(self) -> int:
        return self.rented + self.pending_sale + self.pending_write_off

    @property
    def available_stock(self) -> int:
        return self.total_stock - self.outstanding_quantity

    def to_dict(self) -> dict:
        return {
            "equipmentID": self.equipment_id,
            "availableStock": self.available_stock,
            "totalStock": self.total_stock,
            "outstandingQuantity": self.outstanding_quantity,
            "rentedQuantity": self.rented,
            "pendingSaleQuantity": self.pending_sale,
            "pendingWriteOffQuantity": self.pending_write_off,
        }


def _scalar_int(db: Session, stmt) -> int:
    return int(db.execute(stmt).scalar() or 0)


def rented_quantity(db: Session, equipment_id: int) -> int:
    issued = _scalar_int(
        db,
        select(func.coalesce(func.sum(RentalItem.Quantity), 0))
        .where(RentalItem.EquipmentID == equipment_id)
        .where(RentalItem.Status.in_(OUTSTANDING_RENTAL_STATES)),
    )
    returned = _scalar_int(
        db,
        select(func.coalesce(func.sum(ReturnRecord.ReturnQuantity), 0))
        .join(RentalItem, RentalItem.RentalID == ReturnRecord.RentalID)
        .where(RentalItem.EquipmentID == equipment_id)
        .where(RentalItem.Status.in_(OUTSTANDING_RENTAL_STATES)),
    )
    return issued - returned


def pending_sale_quantity(db: Session, equipment_id: int) -> int:
    return _scalar_int(
        db,
        select(func.coalesce(func.sum(Sale.Quantity), 0))
        .where(Sale.EquipmentID == equipment_id)
        .where(Sale.Status == PENDING_STATE),
    )


def pending_write_off_quantity(db: Session, equipment_id: int) -> int:
    return _scalar_int(
        db,
        select(func.coalesce(func.sum(WriteOff.Quantity), 0))
        .where(WriteOff.EquipmentID == equipment_id)
        .where(WriteOff.Status == PENDING_STATE),
    )


def snapshot_for_line(db: Session, line: EquipmentLine) -> StockSnapshot:
    return StockSnapshot(
        equipment_id=line.EquipmentID,
        total_stock=int(line.TotalStock or 0),
        rented=rented_quantity(db, line.EquipmentID),
        pending_sale=pending_sale_quantity(db, line.EquipmentID),
        pending_write_off=pending_write_off_quantity(db, line.EquipmentID),
    )


def stock_snapshot(db: Session, equipment_id: int) -> StockSnapshot:
    line = db.get(EquipmentLine, equipment_id)
    if not line:
        raise NotFoundError(f"Equipment {equipment_id} not found.", equipmentID=equipment_id)
    return snapshot_for_line(db, line)


def available_stock(db: Session, equipment_id: int) -> int:
    """Units of the line that can be claimed right now.

    Always derived from the allocation rows; nothing caches this number.
    """
    return stock_snapshot(db, equipment_id).available_stock
