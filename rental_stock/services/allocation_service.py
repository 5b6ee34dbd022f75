from __future__ import annotations

import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Iterable, Iterator

from sqlalchemy import func, select, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from rental_stock.models.stock_models import EquipmentLine, RentalItem, ReturnRecord, Sale, WriteOff
from rental_stock.services.audit_service import log_audit
from rental_stock.services.errors import (
    ConcurrencyTimeoutError,
    InsufficientStockError,
    InvalidAllocationStateError,
    InvalidEquipmentStateError,
    InvalidQuantityError,
    NotFoundError,
    OverReleaseError,
)
from rental_stock.services.stock_ledger import (
    OUTSTANDING_RENTAL_STATES,
    PENDING_STATE,
    StockSnapshot,
    snapshot_for_line,
)

LOCK_TIMEOUT_SECONDS = float(os.environ.get("STOCK_LOCK_TIMEOUT_SECONDS") or "5")
CLAIM_MAX_ATTEMPTS = int(os.environ.get("STOCK_CLAIM_MAX_ATTEMPTS") or "3")
RETRY_BACKOFF_SECONDS = float(os.environ.get("STOCK_RETRY_BACKOFF_SECONDS") or "0.05")

NON_TRANSACTABLE_STATES = {"retired", "maintenance"}
ALLOCATION_LOGGER = logging.getLogger("rental_stock.allocation")

_KIND_MODELS = {
    "rental": (RentalItem, "RentalID"),
    "sale": (Sale, "SaleID"),
    "write_off": (WriteOff, "WriteOffID"),
}
_LINE_LOCKS_GUARD = threading.Lock()
_LINE_LOCKS: dict[int, threading.Lock] = {}


@dataclass(frozen=True)
class AllocationToken:
    kind: str
    record_id: int
    equipment_id: int
    quantity: int


@dataclass
class ClaimRequest:
    equipment_id: int
    quantity: int
    build_record: Callable[[EquipmentLine], Any]


@dataclass
class ReleaseRequest:
    token: AllocationToken
    quantity: int
    on_release: Callable[[Any, int, int], None] | None = None


def _line_lock(equipment_id: int) -> threading.Lock:
    with _LINE_LOCKS_GUARD:
        lock = _LINE_LOCKS.get(equipment_id)
        if lock is None:
            lock = threading.Lock()
            _LINE_LOCKS[equipment_id] = lock
        return lock


@contextmanager
def hold_line_locks(equipment_ids: Iterable[int], timeout: float | None = None) -> Iterator[list[int]]:
    """Serialize work per equipment line inside this process.

    Locks are taken in ascending id order so multi-line operations cannot
    deadlock each other. Lines not listed are never blocked.
    """
    ids = sorted({int(equipment_id) for equipment_id in equipment_ids})
    wait = LOCK_TIMEOUT_SECONDS if timeout is None else max(0.0, float(timeout))
    deadline = time.monotonic() + wait
    acquired: list[threading.Lock] = []
    try:
        for equipment_id in ids:
            lock = _line_lock(equipment_id)
            remaining = max(0.0, deadline - time.monotonic())
            if not lock.acquire(timeout=remaining):
                ALLOCATION_LOGGER.warning("Lock timeout on equipment %s after %.2fs", equipment_id, wait)
                raise ConcurrencyTimeoutError(
                    f"Equipment {equipment_id} is busy. Try again.",
                    equipmentID=equipment_id,
                )
            acquired.append(lock)
        yield ids
    finally:
        for lock in reversed(acquired):
            lock.release()


def _lock_equipment_rows(db: Session, equipment_ids: list[int], timeout: float) -> dict[int, EquipmentLine]:
    try:
        if db.get_bind().dialect.name == "postgresql":
            db.execute(text(f"SET LOCAL lock_timeout = {max(1, int(timeout * 1000))}"))
        rows = db.execute(
            select(EquipmentLine)
            .where(EquipmentLine.EquipmentID.in_(equipment_ids))
            .order_by(EquipmentLine.EquipmentID)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all()
    except OperationalError as exc:
        ALLOCATION_LOGGER.warning("Row lock failed for equipment %s: %s", equipment_ids, exc)
        raise ConcurrencyTimeoutError(
            "Equipment rows are locked by another operation. Try again.",
            equipmentIDs=equipment_ids,
        ) from exc

    lines = {row.EquipmentID: row for row in rows}
    for equipment_id in equipment_ids:
        if equipment_id not in lines:
            raise NotFoundError(f"Equipment {equipment_id} not found.", equipmentID=equipment_id)
    return lines


@contextmanager
def allocation_scope(
    db: Session,
    equipment_ids: Iterable[int],
    lock_timeout: float | None = None,
) -> Iterator[dict[int, EquipmentLine]]:
    """One atomic unit of work over the given equipment lines.

    Yields the row-locked lines keyed by id. Commits when the block exits
    cleanly and rolls back on any error, so a failed claim leaves no trace.
    """
    timeout = LOCK_TIMEOUT_SECONDS if lock_timeout is None else lock_timeout
    with hold_line_locks(equipment_ids, timeout) as ids:
        try:
            lines = _lock_equipment_rows(db, ids, timeout)
            yield lines
            db.commit()
        except OperationalError as exc:
            db.rollback()
            if "lock" not in str(exc).lower():
                raise
            ALLOCATION_LOGGER.warning("Database lock conflict on equipment %s: %s", ids, exc)
            raise ConcurrencyTimeoutError(
                "Equipment rows are locked by another operation. Try again.",
                equipmentIDs=ids,
            ) from exc
        except Exception:
            db.rollback()
            raise


def with_retry(operation: Callable[[], Any], attempts: int | None = None, backoff: float | None = None) -> Any:
    max_attempts = max(1, int(attempts or CLAIM_MAX_ATTEMPTS))
    delay = RETRY_BACKOFF_SECONDS if backoff is None else max(0.0, float(backoff))
    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except ConcurrencyTimeoutError:
            if attempt >= max_attempts:
                raise
            ALLOCATION_LOGGER.warning("Concurrency timeout, retrying (attempt %s of %s)", attempt + 1, max_attempts)
            time.sleep(delay * (2 ** (attempt - 1)))


def require_positive_quantity(quantity: Any) -> int:
    try:
        value = int(quantity)
    except (TypeError, ValueError) as exc:
        raise InvalidQuantityError("Quantity must be a whole number.", quantity=quantity) from exc
    if value < 1:
        raise InvalidQuantityError("Quantity must be at least 1.", quantity=value)
    return value


def _ensure_transactable(line: EquipmentLine) -> None:
    status = (line.Status or "available").strip().lower()
    if status in NON_TRANSACTABLE_STATES:
        raise InvalidEquipmentStateError(
            f"Equipment {line.EquipmentID} is {status} and cannot be allocated.",
            equipmentID=line.EquipmentID,
            status=status,
        )


def _sync_display_status(line: EquipmentLine, available: int) -> None:
    status = line.Status or "available"
    if status == "available" and available <= 0:
        line.Status = "borrowed"
        line.UpdatedDate = datetime.now()
    elif status == "borrowed" and available > 0:
        line.Status = "available"
        line.UpdatedDate = datetime.now()


def kind_of(record: Any) -> str:
    for kind, (model, _) in _KIND_MODELS.items():
        if isinstance(record, model):
            return kind
    raise TypeError(f"{type(record).__name__} is not an allocation record")


def token_for(record: Any) -> AllocationToken:
    kind = kind_of(record)
    _, pk_name = _KIND_MODELS[kind]
    return AllocationToken(
        kind=kind,
        record_id=int(getattr(record, pk_name)),
        equipment_id=int(record.EquipmentID),
        quantity=int(record.Quantity),
    )


def returned_quantity(db: Session, rental_id: int) -> int:
    return int(
        db.execute(
            select(func.coalesce(func.sum(ReturnRecord.ReturnQuantity), 0)).where(ReturnRecord.RentalID == rental_id)
        ).scalar()
        or 0
    )


def outstanding_for(db: Session, kind: str, record: Any) -> int:
    if kind == "rental":
        if record.Status not in OUTSTANDING_RENTAL_STATES:
            return 0
        return int(record.Quantity) - returned_quantity(db, record.RentalID)
    if record.Status != PENDING_STATE:
        return 0
    return int(record.Quantity)


def _load_record(db: Session, token: AllocationToken) -> Any:
    if token.kind not in _KIND_MODELS:
        raise ValueError(f"Unknown allocation kind: {token.kind}")
    model, pk_name = _KIND_MODELS[token.kind]
    record = db.execute(
        select(model)
        .where(getattr(model, pk_name) == token.record_id)
        .execution_options(populate_existing=True)
    ).scalars().first()
    if not record or int(record.EquipmentID) != token.equipment_id:
        raise NotFoundError(f"Allocation {token.kind} #{token.record_id} not found.", recordID=token.record_id)
    return record


def _claim_locked(
    db: Session,
    line: EquipmentLine,
    quantity: int,
    build_record: Callable[[EquipmentLine], Any],
    actor_user_id: int | None,
) -> AllocationToken:
    _ensure_transactable(line)
    snapshot = snapshot_for_line(db, line)
    if quantity > snapshot.available_stock:
        raise InsufficientStockError(line.EquipmentID, quantity, snapshot.available_stock)

    record = build_record(line)
    if int(record.Quantity) != quantity:
        raise ValueError("Allocation record quantity does not match the claimed quantity.")
    db.add(record)
    db.flush()

    token = token_for(record)
    remaining = snapshot.available_stock - quantity
    log_audit(
        db,
        "Equipment",
        line.EquipmentID,
        "Claim",
        f"{token.kind} #{token.record_id} claimed {quantity}; available {snapshot.available_stock} -> {remaining}",
        user_id=actor_user_id,
    )
    _sync_display_status(line, remaining)
    return token


def claim(
    db: Session,
    equipment_id: int,
    quantity: int,
    build_record: Callable[[EquipmentLine], Any],
    actor_user_id: int | None = None,
    lock_timeout: float | None = None,
) -> AllocationToken:
    """Claim ``quantity`` units of a line and persist the allocation row.

    The availability check and the insert happen under the line lock in one
    transaction. ``build_record`` receives the locked line and returns the
    unsaved RentalItem, Sale or WriteOff carrying exactly ``quantity``.
    """
    wanted = require_positive_quantity(quantity)
    with allocation_scope(db, [equipment_id], lock_timeout) as lines:
        token = _claim_locked(db, lines[int(equipment_id)], wanted, build_record, actor_user_id)
    ALLOCATION_LOGGER.info("Claimed %s units of equipment %s for %s #%s", wanted, equipment_id, token.kind, token.record_id)
    return token


def claim_many(
    db: Session,
    requests: list[ClaimRequest],
    actor_user_id: int | None = None,
    lock_timeout: float | None = None,
) -> list[AllocationToken]:
    if not requests:
        raise InvalidQuantityError("No allocation lines supplied.")
    quantities = [require_positive_quantity(request.quantity) for request in requests]
    tokens: list[AllocationToken] = []
    with allocation_scope(db, [request.equipment_id for request in requests], lock_timeout) as lines:
        for request, wanted in zip(requests, quantities):
            line = lines[int(request.equipment_id)]
            tokens.append(_claim_locked(db, line, wanted, request.build_record, actor_user_id))
    ALLOCATION_LOGGER.info("Claimed %s allocation lines in one transaction", len(tokens))
    return tokens


def _default_release(record: Any, quantity: int, outstanding: int) -> None:
    if isinstance(record, RentalItem):
        raise TypeError("Rental releases need an on_release handler that records the return.")
    if quantity == outstanding:
        record.Status = "cancelled"
    else:
        record.Quantity = outstanding - quantity
        # Totals follow the remaining quantity.
        if isinstance(record, Sale) and record.UnitPrice is not None:
            record.TotalAmount = Decimal(str(record.UnitPrice)) * record.Quantity
        elif isinstance(record, WriteOff) and record.ValuePerUnit is not None:
            record.TotalValue = Decimal(str(record.ValuePerUnit)) * record.Quantity
    record.UpdatedDate = datetime.now()


def release(
    db: Session,
    token: AllocationToken,
    released_quantity: int,
    on_release: Callable[[Any, int, int], None] | None = None,
    actor_user_id: int | None = None,
    lock_timeout: float | None = None,
) -> int:
    """Give ``released_quantity`` units of an allocation back to the pool.

    ``on_release(record, quantity, outstanding_before)`` runs inside the same
    transaction. Returns the quantity still outstanding afterwards.
    """
    wanted = require_positive_quantity(released_quantity)
    with allocation_scope(db, [token.equipment_id], lock_timeout) as lines:
        remaining = _release_locked(db, lines[token.equipment_id], token, wanted, on_release, actor_user_id)
    ALLOCATION_LOGGER.info("Released %s units of equipment %s from %s #%s", wanted, token.equipment_id, token.kind, token.record_id)
    return remaining


def release_many(
    db: Session,
    requests: list[ReleaseRequest],
    actor_user_id: int | None = None,
    lock_timeout: float | None = None,
) -> list[int]:
    if not requests:
        raise InvalidQuantityError("No release lines supplied.")
    quantities = [require_positive_quantity(request.quantity) for request in requests]
    remaining: list[int] = []
    with allocation_scope(db, [request.token.equipment_id for request in requests], lock_timeout) as lines:
        for request, wanted in zip(requests, quantities):
            line = lines[request.token.equipment_id]
            remaining.append(_release_locked(db, line, request.token, wanted, request.on_release, actor_user_id))
    ALLOCATION_LOGGER.info("Released %s allocation lines in one transaction", len(remaining))
    return remaining


def _release_locked(
    db: Session,
    line: EquipmentLine,
    token: AllocationToken,
    quantity: int,
    on_release: Callable[[Any, int, int], None] | None,
    actor_user_id: int | None,
) -> int:
    record = _load_record(db, token)
    outstanding = outstanding_for(db, token.kind, record)
    if quantity > outstanding:
        raise OverReleaseError(
            outstanding,
            quantity,
            equipmentID=token.equipment_id,
            kind=token.kind,
            recordID=token.record_id,
        )
    before = snapshot_for_line(db, line)
    (on_release or _default_release)(record, quantity, outstanding)
    db.flush()
    remaining = outstanding - quantity
    log_audit(
        db,
        "Equipment",
        token.equipment_id,
        "Release",
        f"{token.kind} #{token.record_id} released {quantity}; outstanding {outstanding} -> {remaining}",
        user_id=actor_user_id,
    )
    _sync_display_status(line, before.available_stock + quantity)
    return remaining


def finalize(
    db: Session,
    token: AllocationToken,
    actor_user_id: int | None = None,
    lock_timeout: float | None = None,
) -> None:
    """Turn a pending sale or write-off into a permanent stock reduction.

    Total stock drops by the claimed quantity and the row leaves the
    outstanding set, so availability does not move.
    """
    if token.kind == "rental":
        raise ValueError("Rentals are closed by returns, not finalized.")
    with allocation_scope(db, [token.equipment_id], lock_timeout) as lines:
        line = lines[token.equipment_id]
        record = _load_record(db, token)
        if record.Status != PENDING_STATE:
            raise InvalidAllocationStateError(
                f"{token.kind} #{token.record_id} is {record.Status}, not pending.",
                recordID=token.record_id,
                status=record.Status,
            )
        quantity = int(record.Quantity)
        if int(line.TotalStock or 0) < quantity:
            raise InsufficientStockError(line.EquipmentID, quantity, int(line.TotalStock or 0))
        line.TotalStock = int(line.TotalStock or 0) - quantity
        line.UpdatedDate = datetime.now()
        record.Status = "confirmed"
        record.UpdatedDate = datetime.now()
        log_audit(
            db,
            "Equipment",
            line.EquipmentID,
            "Finalize",
            f"{token.kind} #{token.record_id} removed {quantity} units from total stock",
            user_id=actor_user_id,
        )
    ALLOCATION_LOGGER.info("Finalized %s #%s (%s units of equipment %s)", token.kind, token.record_id, quantity, token.equipment_id)


def apply_stock_adjustment(
    db: Session,
    line: EquipmentLine,
    delta: int,
    reason: str | None = None,
    actor_user_id: int | None = None,
) -> StockSnapshot:
    """Move the total stock of a line that the caller holds in an
    ``allocation_scope``. The new total may not drop below what is allocated.
    """
    change = int(delta)
    before = snapshot_for_line(db, line)
    new_total = before.total_stock + change
    if new_total < before.outstanding_quantity:
        raise InsufficientStockError(
            line.EquipmentID,
            -change,
            before.available_stock,
            message=(
                f"Cannot remove {-change} units from equipment {line.EquipmentID}: "
                f"only {before.available_stock} are not allocated."
            ),
        )
    line.TotalStock = new_total
    line.UpdatedDate = datetime.now()
    log_audit(
        db,
        "Equipment",
        line.EquipmentID,
        "AdjustStock",
        f"Total {before.total_stock} -> {new_total}" + (f": {reason}" if reason else ""),
        user_id=actor_user_id,
    )
    _sync_display_status(line, new_total - before.outstanding_quantity)
    return StockSnapshot(
        equipment_id=line.EquipmentID,
        total_stock=new_total,
        rented=before.rented,
        pending_sale=before.pending_sale,
        pending_write_off=before.pending_write_off,
    )


def adjust_total_stock(
    db: Session,
    equipment_id: int,
    delta: int,
    reason: str | None = None,
    actor_user_id: int | None = None,
    lock_timeout: float | None = None,
) -> StockSnapshot:
    change = int(delta)
    if change == 0:
        raise InvalidQuantityError("Stock adjustment must change the total.", delta=change)
    with allocation_scope(db, [equipment_id], lock_timeout) as lines:
        after = apply_stock_adjustment(db, lines[int(equipment_id)], change, reason, actor_user_id)
    ALLOCATION_LOGGER.info("Adjusted total stock of equipment %s by %s", equipment_id, change)
    return after
