from __future__ import annotations

import logging
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from rental_stock.models.stock_models import EquipmentLine, InventoryCheck, InventoryCheckItem
from rental_stock.services.allocation_service import allocation_scope, apply_stock_adjustment
from rental_stock.services.audit_service import log_audit
from rental_stock.services.errors import (
    InvalidInventoryCheckStateError,
    InvalidQuantityError,
    NotFoundError,
    ValidationFailedError,
)

IN_PROGRESS = "in_progress"
INVENTORY_LOGGER = logging.getLogger("rental_stock.inventory")


def get_inventory_check_or_404(db: Session, check_id: int) -> InventoryCheck:
    check = db.execute(
        select(InventoryCheck)
        .options(selectinload(InventoryCheck.Items).selectinload(InventoryCheckItem.Equipment))
        .where(InventoryCheck.InventoryCheckID == check_id)
        .execution_options(populate_existing=True)
    ).scalars().first()
    if not check:
        raise NotFoundError(f"Inventory check {check_id} not found.", inventoryCheckID=check_id)
    return check


def _require_in_progress(check: InventoryCheck) -> None:
    if check.Status != IN_PROGRESS:
        raise InvalidInventoryCheckStateError(
            f"Inventory check {check.InventoryCheckID} is {check.Status}.",
            inventoryCheckID=check.InventoryCheckID,
            status=check.Status,
        )


def create_inventory_check(
    db: Session,
    warehouse_id: int | None = None,
    check_date: date | None = None,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> InventoryCheck:
    """Open a stock count and snapshot the expected total of every stocked line.

    Without a warehouse the count covers the whole fleet. Only one count per
    warehouse may be open at a time.
    """
    scope = InventoryCheck.WarehouseID.is_(None) if warehouse_id is None else InventoryCheck.WarehouseID == warehouse_id
    open_check = db.execute(
        select(InventoryCheck.InventoryCheckID).where(scope, InventoryCheck.Status == IN_PROGRESS).limit(1)
    ).scalar()
    if open_check is not None:
        raise InvalidInventoryCheckStateError(
            "An inventory check is already in progress for this warehouse. Complete or cancel it first.",
            inventoryCheckID=open_check,
            warehouseID=warehouse_id,
        )

    stmt = select(EquipmentLine).where(EquipmentLine.TotalStock > 0).order_by(EquipmentLine.EquipmentID)
    if warehouse_id is not None:
        stmt = stmt.where(EquipmentLine.WarehouseID == warehouse_id)
    lines = db.execute(stmt).scalars().all()

    check = InventoryCheck(
        WarehouseID=warehouse_id,
        CheckDate=check_date or date.today(),
        Status=IN_PROGRESS,
        Notes=notes,
        CreatedBy=actor_user_id,
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    check.Items = [
        InventoryCheckItem(
            EquipmentID=line.EquipmentID,
            ExpectedQuantity=int(line.TotalStock or 0),
            UpdatedDate=datetime.now(),
        )
        for line in lines
    ]
    db.add(check)
    db.flush()
    log_audit(
        db,
        "InventoryCheck",
        check.InventoryCheckID,
        "Create",
        f"Counting {len(lines)} lines",
        user_id=actor_user_id,
    )
    db.commit()
    INVENTORY_LOGGER.info("Inventory check %s opened with %s lines", check.InventoryCheckID, len(lines))
    return get_inventory_check_or_404(db, check.InventoryCheckID)


def record_count(
    db: Session,
    check_id: int,
    item_id: int,
    actual_quantity: int,
    notes: str | None = None,
) -> InventoryCheckItem:
    check = get_inventory_check_or_404(db, check_id)
    _require_in_progress(check)
    try:
        counted = int(actual_quantity)
    except (TypeError, ValueError) as exc:
        raise InvalidQuantityError("actualQuantity must be a whole number.", itemID=item_id) from exc
    if counted < 0:
        raise InvalidQuantityError("actualQuantity cannot be negative.", itemID=item_id, actualQuantity=counted)

    item = next((row for row in check.Items if row.ItemID == item_id), None)
    if item is None:
        raise NotFoundError(
            f"Item {item_id} is not part of inventory check {check_id}.",
            inventoryCheckID=check_id,
            itemID=item_id,
        )
    item.ActualQuantity = counted
    item.Notes = notes
    item.UpdatedDate = datetime.now()
    check.UpdatedDate = datetime.now()
    db.commit()
    return item


def complete_inventory_check(
    db: Session,
    check_id: int,
    adjust_stock: bool = True,
    actor_user_id: int | None = None,
    lock_timeout: float | None = None,
) -> InventoryCheck:
    """Close a count. With ``adjust_stock`` every line's total becomes the
    counted quantity, all lines in one transaction.

    A count below what is out on rent or pending disposal is rejected with
    ``InsufficientStockError`` and nothing is changed.
    """
    check = get_inventory_check_or_404(db, check_id)
    _require_in_progress(check)
    unchecked = [item.ItemID for item in check.Items if item.ActualQuantity is None]
    if unchecked:
        raise ValidationFailedError(
            f"Cannot complete inventory check {check_id}: {len(unchecked)} items are not counted.",
            inventoryCheckID=check_id,
            uncheckedItems=unchecked,
        )

    equipment_ids = [item.EquipmentID for item in check.Items] if adjust_stock else []
    if not equipment_ids:
        _close(db, check, "completed", actor_user_id, "Completed without stock changes")
        db.commit()
        INVENTORY_LOGGER.info("Inventory check %s completed without stock changes", check_id)
        return get_inventory_check_or_404(db, check_id)

    adjusted = 0
    with allocation_scope(db, equipment_ids, lock_timeout) as lines:
        # Another worker may have closed the check while we waited for the locks.
        check = get_inventory_check_or_404(db, check_id)
        _require_in_progress(check)
        for item in check.Items:
            line = lines[item.EquipmentID]
            delta = int(item.ActualQuantity) - int(line.TotalStock or 0)
            if delta == 0:
                continue
            apply_stock_adjustment(db, line, delta, reason=f"Inventory check #{check_id}", actor_user_id=actor_user_id)
            adjusted += 1
        _close(db, check, "completed", actor_user_id, f"Completed, {adjusted} lines adjusted")
    INVENTORY_LOGGER.info("Inventory check %s completed, %s lines adjusted", check_id, adjusted)
    return get_inventory_check_or_404(db, check_id)


def cancel_inventory_check(db: Session, check_id: int, actor_user_id: int | None = None) -> InventoryCheck:
    check = get_inventory_check_or_404(db, check_id)
    _require_in_progress(check)
    _close(db, check, "cancelled", actor_user_id, "Cancelled")
    db.commit()
    INVENTORY_LOGGER.info("Inventory check %s cancelled", check_id)
    return get_inventory_check_or_404(db, check_id)


def _close(db: Session, check: InventoryCheck, status: str, actor_user_id: int | None, details: str) -> None:
    check.Status = status
    check.UpdatedDate = datetime.now()
    if status == "completed":
        check.CompletedDate = datetime.now()
    log_audit(db, "InventoryCheck", check.InventoryCheckID, status.capitalize(), details, user_id=actor_user_id)


def serialize_inventory_check(check: InventoryCheck) -> dict:
    items = []
    for item in check.Items:
        equipment = item.Equipment
        items.append(
            {
                "itemID": item.ItemID,
                "equipmentID": item.EquipmentID,
                "name": equipment.Name if equipment else None,
                "inventoryNumber": equipment.InventoryNumber if equipment else None,
                "expectedQuantity": item.ExpectedQuantity,
                "actualQuantity": item.ActualQuantity,
                "difference": (
                    item.ActualQuantity - item.ExpectedQuantity if item.ActualQuantity is not None else None
                ),
                "notes": item.Notes,
            }
        )
    checked = sum(1 for row in items if row["actualQuantity"] is not None)
    return {
        "inventoryCheckID": check.InventoryCheckID,
        "warehouseID": check.WarehouseID,
        "checkDate": check.CheckDate,
        "status": check.Status,
        "notes": check.Notes,
        "createdDate": check.CreatedDate,
        "completedDate": check.CompletedDate,
        "items": items,
        "totalItems": len(items),
        "checkedItems": checked,
        "discrepancies": sum(1 for row in items if row["difference"] not in (None, 0)),
    }
