from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from rental_stock.models.stock_models import EquipmentLine, Sale, WriteOff
from rental_stock.services.allocation_service import (
    claim,
    finalize,
    release,
    require_positive_quantity,
    token_for,
)
from rental_stock.services.errors import (
    InvalidAllocationStateError,
    InvalidQuantityError,
    NotFoundError,
    ValidationFailedError,
)
from rental_stock.services.stock_ledger import PENDING_STATE

DISPOSAL_LOGGER = logging.getLogger("rental_stock.disposals")


def _money(value) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value))


def _require_pending(record, label: str, record_id: int) -> None:
    if record.Status != PENDING_STATE:
        raise InvalidAllocationStateError(
            f"{label} {record_id} is {record.Status}, not pending.",
            recordID=record_id,
            status=record.Status,
        )


def get_sale_or_404(db: Session, sale_id: int) -> Sale:
    sale = db.get(Sale, sale_id)
    if not sale:
        raise NotFoundError(f"Sale {sale_id} not found.", saleID=sale_id)
    return sale


def get_write_off_or_404(db: Session, write_off_id: int) -> WriteOff:
    write_off = db.get(WriteOff, write_off_id)
    if not write_off:
        raise NotFoundError(f"Write-off {write_off_id} not found.", writeOffID=write_off_id)
    return write_off


def _reload(db: Session, model, pk_column, record_id: int):
    return db.execute(
        select(model).where(pk_column == record_id).execution_options(populate_existing=True)
    ).scalars().one()


def create_sale(
    db: Session,
    equipment_id: int,
    quantity: int,
    unit_price: float,
    customer_id: int | None = None,
    invoice_number: str | None = None,
    notes: str | None = None,
    actor_user_id: int | None = None,
    lock_timeout: float | None = None,
) -> Sale:
    """Reserve units for a sale. The units stay out of the pool until the
    sale is confirmed (stock leaves the fleet) or cancelled (units come back).
    """
    wanted = require_positive_quantity(quantity)
    if unit_price is None or unit_price < 0:
        raise InvalidQuantityError("unitPrice cannot be negative.", unitPrice=unit_price)
    price = _money(unit_price)

    def build(line: EquipmentLine) -> Sale:
        return Sale(
            EquipmentID=line.EquipmentID,
            CustomerID=customer_id,
            InvoiceNumber=invoice_number,
            Quantity=wanted,
            UnitPrice=price,
            TotalAmount=price * wanted,
            Status=PENDING_STATE,
            Notes=notes,
            CreatedBy=actor_user_id,
            CreatedDate=datetime.now(),
            UpdatedDate=datetime.now(),
        )

    token = claim(db, equipment_id, wanted, build, actor_user_id=actor_user_id, lock_timeout=lock_timeout)
    DISPOSAL_LOGGER.info("Sale %s pending for %s x equipment %s", token.record_id, wanted, equipment_id)
    return db.get(Sale, token.record_id)


def confirm_sale(db: Session, sale_id: int, actor_user_id: int | None = None, lock_timeout: float | None = None) -> Sale:
    sale = get_sale_or_404(db, sale_id)
    _require_pending(sale, "Sale", sale_id)
    finalize(db, token_for(sale), actor_user_id=actor_user_id, lock_timeout=lock_timeout)
    return _reload(db, Sale, Sale.SaleID, sale_id)


def cancel_sale(db: Session, sale_id: int, actor_user_id: int | None = None, lock_timeout: float | None = None) -> Sale:
    sale = get_sale_or_404(db, sale_id)
    _require_pending(sale, "Sale", sale_id)
    release(db, token_for(sale), int(sale.Quantity), actor_user_id=actor_user_id, lock_timeout=lock_timeout)
    DISPOSAL_LOGGER.info("Sale %s cancelled", sale_id)
    return _reload(db, Sale, Sale.SaleID, sale_id)


def create_write_off(
    db: Session,
    equipment_id: int,
    quantity: int,
    reason: str,
    value_per_unit: float | None = None,
    notes: str | None = None,
    actor_user_id: int | None = None,
    lock_timeout: float | None = None,
) -> WriteOff:
    wanted = require_positive_quantity(quantity)
    text = (reason or "").strip()
    if not text:
        raise ValidationFailedError("A write-off needs a reason.", field="reason", equipmentID=equipment_id)
    if value_per_unit is not None and value_per_unit < 0:
        raise InvalidQuantityError("valuePerUnit cannot be negative.", valuePerUnit=value_per_unit)
    unit_value = _money(value_per_unit)

    def build(line: EquipmentLine) -> WriteOff:
        return WriteOff(
            EquipmentID=line.EquipmentID,
            Quantity=wanted,
            ValuePerUnit=unit_value,
            TotalValue=unit_value * wanted if unit_value is not None else None,
            Reason=text,
            Status=PENDING_STATE,
            Notes=notes,
            CreatedBy=actor_user_id,
            CreatedDate=datetime.now(),
            UpdatedDate=datetime.now(),
        )

    token = claim(db, equipment_id, wanted, build, actor_user_id=actor_user_id, lock_timeout=lock_timeout)
    DISPOSAL_LOGGER.info("Write-off %s pending for %s x equipment %s", token.record_id, wanted, equipment_id)
    return db.get(WriteOff, token.record_id)


def confirm_write_off(
    db: Session,
    write_off_id: int,
    actor_user_id: int | None = None,
    lock_timeout: float | None = None,
) -> WriteOff:
    write_off = get_write_off_or_404(db, write_off_id)
    _require_pending(write_off, "Write-off", write_off_id)
    finalize(db, token_for(write_off), actor_user_id=actor_user_id, lock_timeout=lock_timeout)
    return _reload(db, WriteOff, WriteOff.WriteOffID, write_off_id)


def cancel_write_off(
    db: Session,
    write_off_id: int,
    actor_user_id: int | None = None,
    lock_timeout: float | None = None,
) -> WriteOff:
    write_off = get_write_off_or_404(db, write_off_id)
    _require_pending(write_off, "Write-off", write_off_id)
    release(db, token_for(write_off), int(write_off.Quantity), actor_user_id=actor_user_id, lock_timeout=lock_timeout)
    DISPOSAL_LOGGER.info("Write-off %s cancelled", write_off_id)
    return _reload(db, WriteOff, WriteOff.WriteOffID, write_off_id)


def serialize_sale(sale: Sale) -> dict:
    return {
        "saleID": sale.SaleID,
        "equipmentID": sale.EquipmentID,
        "customerID": sale.CustomerID,
        "invoiceNumber": sale.InvoiceNumber,
        "quantity": sale.Quantity,
        "unitPrice": sale.UnitPrice,
        "totalAmount": sale.TotalAmount,
        "status": sale.Status,
        "notes": sale.Notes,
        "createdDate": sale.CreatedDate,
        "updatedDate": sale.UpdatedDate,
    }


def serialize_write_off(write_off: WriteOff) -> dict:
    return {
        "writeOffID": write_off.WriteOffID,
        "equipmentID": write_off.EquipmentID,
        "quantity": write_off.Quantity,
        "valuePerUnit": write_off.ValuePerUnit,
        "totalValue": write_off.TotalValue,
        "reason": write_off.Reason,
        "status": write_off.Status,
        "notes": write_off.Notes,
        "createdDate": write_off.CreatedDate,
        "updatedDate": write_off.UpdatedDate,
    }
