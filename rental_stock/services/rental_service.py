from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from rental_stock.models.stock_models import EquipmentLine, Order, RentalItem, ReturnRecord
from rental_stock.services.allocation_service import (
    ClaimRequest,
    ReleaseRequest,
    allocation_scope,
    claim,
    claim_many,
    outstanding_for,
    release,
    release_many,
    require_positive_quantity,
    returned_quantity,
    token_for,
)
from rental_stock.services.audit_service import log_audit
from rental_stock.services.batch_service import ensure_batch_kind, new_batch_id
from rental_stock.services.errors import (
    InvalidConditionError,
    InvalidDateRangeError,
    InvalidQuantityError,
    InvalidRentalStateError,
    MissingDamageDescriptionError,
    NotFoundError,
)

RENTAL_STATES = ("created", "issued", "returned")
INITIAL_STATES = {"created", "issued"}
STATE_TRANSITIONS = {
    "created": {"issued", "returned"},
    "issued": {"returned"},
    "returned": set(),
}
RETURN_CONDITIONS = {"ok", "damaged", "missing"}
RENTAL_LOGGER = logging.getLogger("rental_stock.rentals")


@dataclass
class RentalLine:
    equipment_id: int
    quantity: int
    daily_rate: float | None = None
    note: str | None = None


@dataclass
class ReturnLine:
    rental_id: int
    return_quantity: int
    condition: str = "ok"
    actual_return_date: date | None = None
    damage_description: str | None = None
    additional_charges: float | None = None
    notes: str | None = None


def _require_order(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if not order:
        raise NotFoundError(f"Order {order_id} not found.", orderID=order_id)
    return order


def _require_rental(db: Session, rental_id: int) -> RentalItem:
    rental = db.get(RentalItem, rental_id)
    if not rental:
        raise NotFoundError(f"Rental {rental_id} not found.", rentalID=rental_id)
    return rental


def _validate_dates(issue_date: date, planned_return_date: date) -> None:
    if not issue_date or not planned_return_date or planned_return_date <= issue_date:
        raise InvalidDateRangeError(
            "plannedReturnDate must be after issueDate.",
            issueDate=issue_date.isoformat() if issue_date else None,
            plannedReturnDate=planned_return_date.isoformat() if planned_return_date else None,
        )


def _normalize_initial_state(status: str | None) -> str:
    state = (status or "created").strip().lower()
    if state not in INITIAL_STATES:
        raise InvalidRentalStateError("Initial rental status must be created or issued.", status=state)
    return state


def _transition_state(rental: RentalItem, target_state: str) -> None:
    current = rental.Status or "created"
    if target_state == current:
        return
    if target_state not in STATE_TRANSITIONS.get(current, set()):
        raise InvalidRentalStateError(
            f"Invalid rental state transition: {current} -> {target_state}",
            rentalID=rental.RentalID,
            status=current,
        )
    rental.Status = target_state
    rental.UpdatedDate = datetime.now()


def _rental_builder(
    order_id: int,
    quantity: int,
    issue_date: date,
    planned_return_date: date,
    daily_rate: float | None,
    status: str,
    batch_id: str | None,
    note: str | None,
    actor_user_id: int | None,
):
    def build(line: EquipmentLine) -> RentalItem:
        # Price is frozen at issue time; later catalog changes do not touch it.
        snapshot_rate = daily_rate if daily_rate is not None else line.DailyRate
        return RentalItem(
            OrderID=order_id,
            EquipmentID=line.EquipmentID,
            Quantity=quantity,
            IssueDate=issue_date,
            PlannedReturnDate=planned_return_date,
            DailyRate=Decimal(str(snapshot_rate)) if snapshot_rate is not None else None,
            Status=status,
            BatchID=batch_id,
            Note=note,
            CreatedBy=actor_user_id,
            CreatedDate=datetime.now(),
            UpdatedDate=datetime.now(),
        )

    return build


def create_rental(
    db: Session,
    order_id: int,
    equipment_id: int,
    quantity: int,
    issue_date: date,
    planned_return_date: date,
    daily_rate: float | None = None,
    batch_id: str | None = None,
    status: str | None = "created",
    note: str | None = None,
    actor_user_id: int | None = None,
    lock_timeout: float | None = None,
) -> RentalItem:
    _validate_dates(issue_date, planned_return_date)
    state = _normalize_initial_state(status)
    wanted = require_positive_quantity(quantity)
    _require_order(db, order_id)
    ensure_batch_kind(db, batch_id, "issue")

    token = claim(
        db,
        equipment_id,
        wanted,
        _rental_builder(order_id, wanted, issue_date, planned_return_date, daily_rate, state, batch_id, note, actor_user_id),
        actor_user_id=actor_user_id,
        lock_timeout=lock_timeout,
    )
    RENTAL_LOGGER.info("Rental %s created for order %s (%s x equipment %s)", token.record_id, order_id, quantity, equipment_id)
    return db.get(RentalItem, token.record_id)


def create_rental_batch(
    db: Session,
    order_id: int,
    lines: list[RentalLine],
    issue_date: date,
    planned_return_date: date,
    batch_id: str | None = None,
    status: str | None = "created",
    actor_user_id: int | None = None,
    lock_timeout: float | None = None,
) -> tuple[str, list[RentalItem]]:
    """Issue several lines to one order as a single batch.

    Either every line is allocated or none is.
    """
    _validate_dates(issue_date, planned_return_date)
    state = _normalize_initial_state(status)
    if not lines:
        raise InvalidQuantityError("No rental lines supplied.")
    _require_order(db, order_id)
    ensure_batch_kind(db, batch_id, "issue")
    batch = batch_id or new_batch_id(db, "issue")

    requests = [
        ClaimRequest(
            equipment_id=line.equipment_id,
            quantity=line.quantity,
            build_record=_rental_builder(
                order_id,
                require_positive_quantity(line.quantity),
                issue_date,
                planned_return_date,
                line.daily_rate,
                state,
                batch,
                line.note,
                actor_user_id,
            ),
        )
        for line in lines
    ]
    tokens = claim_many(db, requests, actor_user_id=actor_user_id, lock_timeout=lock_timeout)
    RENTAL_LOGGER.info("Batch %s created with %s rentals for order %s", batch, len(tokens), order_id)
    return batch, [db.get(RentalItem, token.record_id) for token in tokens]


def issue_rental(
    db: Session,
    rental_id: int,
    actor_user_id: int | None = None,
    lock_timeout: float | None = None,
) -> RentalItem:
    rental = _require_rental(db, rental_id)
    with allocation_scope(db, [rental.EquipmentID], lock_timeout):
        rental = db.execute(
            select(RentalItem).where(RentalItem.RentalID == rental_id).execution_options(populate_existing=True)
        ).scalars().one()
        if rental.Status != "created":
            raise InvalidRentalStateError(
                f"Rental {rental_id} is {rental.Status}; only created rentals can be issued.",
                rentalID=rental_id,
                status=rental.Status,
            )
        _transition_state(rental, "issued")
        log_audit(db, "Rental", rental_id, "Issue", "Rental issued", user_id=actor_user_id)
    RENTAL_LOGGER.info("Rental %s issued", rental_id)
    return rental


def _validate_return_line(line: ReturnLine) -> ReturnLine:
    condition = (line.condition or "ok").strip().lower()
    if condition not in RETURN_CONDITIONS:
        raise InvalidConditionError(
            f"Unknown return condition: {line.condition}",
            condition=line.condition,
            allowed=sorted(RETURN_CONDITIONS),
        )
    description = (line.damage_description or "").strip()
    if condition != "ok" and not description:
        raise MissingDamageDescriptionError(
            "damageDescription is required when condition is not ok.",
            rentalID=line.rental_id,
            condition=condition,
        )
    try:
        quantity = int(line.return_quantity)
    except (TypeError, ValueError) as exc:
        raise InvalidQuantityError("returnQuantity must be a whole number.", rentalID=line.rental_id) from exc
    if quantity < 1:
        raise InvalidQuantityError("returnQuantity must be at least 1.", rentalID=line.rental_id, returnQuantity=quantity)
    charges = line.additional_charges if line.additional_charges is not None else 0
    if charges < 0:
        raise InvalidQuantityError("additionalCharges cannot be negative.", rentalID=line.rental_id)
    return ReturnLine(
        rental_id=line.rental_id,
        return_quantity=quantity,
        condition=condition,
        actual_return_date=line.actual_return_date,
        damage_description=description or None,
        additional_charges=charges,
        notes=line.notes,
    )


def _return_recorder(db: Session, line: ReturnLine, batch_id: str | None, actor_user_id: int | None, created: list):
    def on_release(rental: RentalItem, quantity: int, outstanding: int) -> None:
        return_date = line.actual_return_date or date.today()
        record = ReturnRecord(
            RentalID=rental.RentalID,
            ReturnQuantity=quantity,
            ActualReturnDate=return_date,
            Condition=line.condition,
            DamageDescription=line.damage_description,
            AdditionalCharges=Decimal(str(line.additional_charges or 0)),
            BatchID=batch_id,
            Notes=line.notes,
            CreatedBy=actor_user_id,
            CreatedDate=datetime.now(),
        )
        db.add(record)
        created.append(record)
        # Condition is recorded only. Returned units rejoin the pool and the
        # line status is left alone; removing damaged units is a write-off.
        if quantity == outstanding:
            _transition_state(rental, "returned")
            rental.ActualReturnDate = return_date
        else:
            rental.UpdatedDate = datetime.now()
        log_audit(
            db,
            "Rental",
            rental.RentalID,
            "Return",
            f"Returned {quantity} of {outstanding} outstanding ({line.condition})",
            user_id=actor_user_id,
        )

    return on_release


def _return_one(
    db: Session,
    line: ReturnLine,
    batch_id: str | None,
    actor_user_id: int | None,
    lock_timeout: float | None,
) -> ReturnRecord:
    rental = _require_rental(db, line.rental_id)
    created: list[ReturnRecord] = []
    remaining = release(
        db,
        token_for(rental),
        line.return_quantity,
        on_release=_return_recorder(db, line, batch_id, actor_user_id, created),
        actor_user_id=actor_user_id,
        lock_timeout=lock_timeout,
    )
    RENTAL_LOGGER.info(
        "Rental %s: %s units returned (%s), %s still outstanding",
        line.rental_id,
        line.return_quantity,
        line.condition,
        remaining,
    )
    return created[0]


def return_rental(
    db: Session,
    rental_id: int,
    return_quantity: int,
    condition: str = "ok",
    actual_return_date: date | None = None,
    damage_description: str | None = None,
    additional_charges: float | None = None,
    batch_id: str | None = None,
    notes: str | None = None,
    actor_user_id: int | None = None,
    lock_timeout: float | None = None,
) -> ReturnRecord:
    line = _validate_return_line(
        ReturnLine(
            rental_id=rental_id,
            return_quantity=return_quantity,
            condition=condition,
            actual_return_date=actual_return_date,
            damage_description=damage_description,
            additional_charges=additional_charges,
            notes=notes,
        )
    )
    ensure_batch_kind(db, batch_id, "return")
    return _return_one(db, line, batch_id, actor_user_id, lock_timeout)


def return_rental_batch(
    db: Session,
    lines: list[ReturnLine],
    batch_id: str | None = None,
    actor_user_id: int | None = None,
    lock_timeout: float | None = None,
) -> tuple[str, list[ReturnRecord]]:
    """Record several returns as one batch; all lines succeed or none do."""
    if not lines:
        raise InvalidQuantityError("No return lines supplied.")
    validated = [_validate_return_line(line) for line in lines]
    rentals = [_require_rental(db, line.rental_id) for line in validated]
    ensure_batch_kind(db, batch_id, "return")
    batch = batch_id or new_batch_id(db, "return")

    created: list[ReturnRecord] = []
    requests = [
        ReleaseRequest(
            token=token_for(rental),
            quantity=line.return_quantity,
            on_release=_return_recorder(db, line, batch, actor_user_id, created),
        )
        for rental, line in zip(rentals, validated)
    ]
    release_many(db, requests, actor_user_id=actor_user_id, lock_timeout=lock_timeout)
    RENTAL_LOGGER.info("Return batch %s recorded with %s lines", batch, len(created))
    return batch, created


def outstanding_quantity(db: Session, rental: RentalItem) -> int:
    return outstanding_for(db, "rental", rental)


def get_rental_or_404(db: Session, rental_id: int) -> RentalItem:
    return _require_rental(db, rental_id)


def list_rentals_for_order(db: Session, order_id: int) -> list[RentalItem]:
    _require_order(db, order_id)
    return db.execute(
        select(RentalItem)
        .options(selectinload(RentalItem.Equipment))
        .where(RentalItem.OrderID == order_id)
        .order_by(RentalItem.IssueDate, RentalItem.RentalID)
    ).scalars().all()


def list_returns_for_order(db: Session, order_id: int) -> list[ReturnRecord]:
    _require_order(db, order_id)
    return db.execute(
        select(ReturnRecord)
        .join(RentalItem, RentalItem.RentalID == ReturnRecord.RentalID)
        .options(selectinload(ReturnRecord.Rental).selectinload(RentalItem.Equipment))
        .where(RentalItem.OrderID == order_id)
        .order_by(ReturnRecord.ReturnID)
    ).scalars().all()


def serialize_rental(db: Session, rental: RentalItem) -> dict:
    returned = returned_quantity(db, rental.RentalID)
    outstanding = int(rental.Quantity or 0) - returned if rental.Status in INITIAL_STATES else 0
    equipment = rental.Equipment
    return {
        "rentalID": rental.RentalID,
        "orderID": rental.OrderID,
        "equipmentID": rental.EquipmentID,
        "quantity": rental.Quantity,
        "returnedQuantity": returned,
        "outstandingQuantity": outstanding,
        "issueDate": rental.IssueDate,
        "plannedReturnDate": rental.PlannedReturnDate,
        "actualReturnDate": rental.ActualReturnDate,
        "dailyRate": rental.DailyRate,
        "status": rental.Status,
        "batchID": rental.BatchID,
        "note": rental.Note,
        "createdDate": rental.CreatedDate,
        "equipment": {
            "equipmentID": equipment.EquipmentID,
            "name": equipment.Name,
            "inventoryNumber": equipment.InventoryNumber,
        } if equipment else None,
    }


def serialize_return(record: ReturnRecord) -> dict:
    rental = record.Rental
    return {
        "returnID": record.ReturnID,
        "rentalID": record.RentalID,
        "orderID": rental.OrderID if rental else None,
        "equipmentID": rental.EquipmentID if rental else None,
        "returnQuantity": record.ReturnQuantity,
        "actualReturnDate": record.ActualReturnDate,
        "condition": record.Condition,
        "damageDescription": record.DamageDescription,
        "additionalCharges": record.AdditionalCharges,
        "batchID": record.BatchID,
        "notes": record.Notes,
        "createdDate": record.CreatedDate,
    }
