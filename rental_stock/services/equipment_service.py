from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rental_stock.models.stock_models import EquipmentLine, Order
from rental_stock.services.allocation_service import adjust_total_stock, allocation_scope
from rental_stock.services.audit_service import log_audit
from rental_stock.services.errors import (
    DuplicateNumberError,
    InvalidEquipmentStateError,
    InvalidQuantityError,
    NotFoundError,
    ValidationFailedError,
)
from rental_stock.services.stock_ledger import StockSnapshot, snapshot_for_line

MANUAL_EQUIPMENT_STATES = {"available", "maintenance", "retired"}


def _parse_seq(inventory_number: str) -> Optional[int]:
    parts = inventory_number.split("-")
    if len(parts) != 2:
        return None
    try:
        return int(parts[1])
    except ValueError:
        return None


def generate_next_inventory_number(db: Session) -> str:
    year = date.today().year
    prefix = f"EQ{year}-"
    existing = db.execute(
        select(EquipmentLine.InventoryNumber).where(EquipmentLine.InventoryNumber.startswith(prefix))
    ).scalars().all()

    max_seq = 0
    for number in existing:
        if not number:
            continue
        seq = _parse_seq(number)
        if seq and seq > max_seq:
            max_seq = seq
    return f"{prefix}{max_seq + 1:04d}"


def generate_next_order_number(db: Session) -> str:
    year = date.today().year
    prefix = f"ORD{year}-"
    existing = db.execute(select(Order.OrderNumber).where(Order.OrderNumber.startswith(prefix))).scalars().all()
    max_seq = 0
    for number in existing:
        seq = _parse_seq(number or "")
        if seq and seq > max_seq:
            max_seq = seq
    return f"{prefix}{max_seq + 1:04d}"


def create_equipment(
    db: Session,
    name: str,
    total_stock: int = 0,
    daily_rate: float | None = None,
    inventory_number: str | None = None,
    category_id: int | None = None,
    warehouse_id: int | None = None,
    actor_user_id: int | None = None,
) -> EquipmentLine:
    if not (name or "").strip():
        raise ValidationFailedError("Equipment name is required.", field="name")
    try:
        total = int(total_stock)
    except (TypeError, ValueError) as exc:
        raise InvalidQuantityError("totalStock must be a whole number.", totalStock=total_stock) from exc
    if total < 0:
        raise InvalidQuantityError("totalStock cannot be negative.", totalStock=total)
    if daily_rate is not None and daily_rate < 0:
        raise InvalidQuantityError("dailyRate cannot be negative.", dailyRate=daily_rate)

    number = (inventory_number or "").strip() or generate_next_inventory_number(db)
    line = EquipmentLine(
        Name=name.strip(),
        InventoryNumber=number,
        CategoryID=category_id,
        WarehouseID=warehouse_id,
        TotalStock=total,
        DailyRate=Decimal(str(daily_rate)) if daily_rate is not None else None,
        Status="available",
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    db.add(line)
    try:
        db.flush()
        log_audit(db, "Equipment", line.EquipmentID, "Create", f"Created with total stock {total}", user_id=actor_user_id)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise DuplicateNumberError(f"Inventory number {number} is already in use.", inventoryNumber=number) from exc
    return line


def get_equipment_or_404(db: Session, equipment_id: int) -> EquipmentLine:
    line = db.get(EquipmentLine, equipment_id)
    if not line:
        raise NotFoundError(f"Equipment {equipment_id} not found.", equipmentID=equipment_id)
    return line


def list_equipment(db: Session, status: str | None = None, warehouse_id: int | None = None) -> list[EquipmentLine]:
    stmt = select(EquipmentLine).order_by(EquipmentLine.Name, EquipmentLine.EquipmentID)
    if status:
        stmt = stmt.where(EquipmentLine.Status == status.strip().lower())
    if warehouse_id is not None:
        stmt = stmt.where(EquipmentLine.WarehouseID == warehouse_id)
    return db.execute(stmt).scalars().all()


def set_equipment_status(
    db: Session,
    equipment_id: int,
    status: str,
    actor_user_id: int | None = None,
    lock_timeout: float | None = None,
) -> EquipmentLine:
    """Manual status change. ``borrowed`` follows availability and is not
    settable; leaving maintenance or retirement lands on whichever of
    available/borrowed matches the current stock.
    """
    target = (status or "").strip().lower()
    if target not in MANUAL_EQUIPMENT_STATES:
        raise InvalidEquipmentStateError(
            f"Status must be one of {sorted(MANUAL_EQUIPMENT_STATES)}.",
            equipmentID=equipment_id,
            status=target,
        )
    with allocation_scope(db, [equipment_id], lock_timeout) as lines:
        line = lines[int(equipment_id)]
        previous = line.Status
        if target == "available" and snapshot_for_line(db, line).available_stock <= 0:
            target = "borrowed"
        line.Status = target
        line.UpdatedDate = datetime.now()
        log_audit(db, "Equipment", line.EquipmentID, "Status", f"{previous} -> {target}", user_id=actor_user_id)
    return line


def adjust_stock(
    db: Session,
    equipment_id: int,
    delta: int,
    reason: str | None = None,
    actor_user_id: int | None = None,
    lock_timeout: float | None = None,
) -> StockSnapshot:
    return adjust_total_stock(
        db,
        equipment_id,
        delta,
        reason=reason,
        actor_user_id=actor_user_id,
        lock_timeout=lock_timeout,
    )


def create_order(
    db: Session,
    order_number: str | None = None,
    customer_id: int | None = None,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> Order:
    number = (order_number or "").strip() or generate_next_order_number(db)
    order = Order(
        OrderNumber=number,
        CustomerID=customer_id,
        Status="created",
        Notes=notes,
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    db.add(order)
    try:
        db.flush()
        log_audit(db, "Order", order.OrderID, "Create", f"Order {number}", user_id=actor_user_id)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise DuplicateNumberError(f"Order number {number} is already in use.", orderNumber=number) from exc
    return order


def get_order_or_404(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if not order:
        raise NotFoundError(f"Order {order_id} not found.", orderID=order_id)
    return order


def serialize_equipment(line: EquipmentLine, snapshot: StockSnapshot | None = None) -> dict:
    payload = {
        "equipmentID": line.EquipmentID,
        "name": line.Name,
        "inventoryNumber": line.InventoryNumber,
        "categoryID": line.CategoryID,
        "warehouseID": line.WarehouseID,
        "totalStock": line.TotalStock,
        "dailyRate": line.DailyRate,
        "status": line.Status,
        "createdDate": line.CreatedDate,
        "updatedDate": line.UpdatedDate,
    }
    if snapshot is not None:
        payload["availableStock"] = snapshot.available_stock
        payload["outstandingQuantity"] = snapshot.outstanding_quantity
    return payload


def serialize_order(order: Order) -> dict:
    return {
        "orderID": order.OrderID,
        "orderNumber": order.OrderNumber,
        "customerID": order.CustomerID,
        "status": order.Status,
        "notes": order.Notes,
        "createdDate": order.CreatedDate,
        "updatedDate": order.UpdatedDate,
    }
