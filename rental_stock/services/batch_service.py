from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from rental_stock.models.stock_models import RentalItem, ReturnRecord
from rental_stock.services.errors import BatchIdCollisionError, BatchKindConflictError, BatchNotFoundError

BATCH_KINDS = {"issue": "ISSUE", "return": "RETURN"}
BATCH_ID_ATTEMPTS = 5
BATCH_LOGGER = logging.getLogger("rental_stock.batches")


@dataclass
class Batch:
    batch_id: str
    kind: str
    items: list[Any] = field(default_factory=list)


def _used_by_rentals(db: Session, batch_id: str) -> bool:
    return db.execute(select(RentalItem.RentalID).where(RentalItem.BatchID == batch_id).limit(1)).first() is not None


def _used_by_returns(db: Session, batch_id: str) -> bool:
    return db.execute(select(ReturnRecord.ReturnID).where(ReturnRecord.BatchID == batch_id).limit(1)).first() is not None


def _batch_id_in_use(db: Session, batch_id: str) -> bool:
    return _used_by_rentals(db, batch_id) or _used_by_returns(db, batch_id)


def ensure_batch_kind(db: Session, batch_id: str | None, kind: str) -> None:
    """A batch id groups either issued rentals or returns, never both."""
    if not batch_id:
        return
    taken = _used_by_returns(db, batch_id) if kind == "issue" else _used_by_rentals(db, batch_id)
    if taken:
        other = "return" if kind == "issue" else "issue"
        raise BatchKindConflictError(
            f"Batch {batch_id} already groups {other} records.",
            batchID=batch_id,
            kind=kind,
        )


def new_batch_id(db: Session, kind: str) -> str:
    prefix = BATCH_KINDS.get((kind or "").strip().lower())
    if not prefix:
        raise ValueError(f"Unknown batch kind: {kind!r}. Expected one of {sorted(BATCH_KINDS)}.")
    for _ in range(BATCH_ID_ATTEMPTS):
        candidate = f"{prefix}-{uuid.uuid4().hex}"
        if not _batch_id_in_use(db, candidate):
            return candidate
        BATCH_LOGGER.warning("Generated batch id %s already in use, retrying", candidate)
    raise BatchIdCollisionError("Could not generate a unique batch id.", kind=kind)


def items_for_batch(db: Session, batch_id: str) -> Batch:
    """All records of one user action, in the order they were created.

    A batch id belongs to one kind only; ``ensure_batch_kind`` rejects reuse
    across issue and return, so the rentals-first lookup never hides returns.
    """
    rentals = db.execute(
        select(RentalItem)
        .options(selectinload(RentalItem.Equipment))
        .where(RentalItem.BatchID == batch_id)
        .order_by(RentalItem.RentalID)
    ).scalars().all()
    if rentals:
        return Batch(batch_id=batch_id, kind="issue", items=list(rentals))

    returns = db.execute(
        select(ReturnRecord)
        .options(selectinload(ReturnRecord.Rental).selectinload(RentalItem.Equipment))
        .where(ReturnRecord.BatchID == batch_id)
        .order_by(ReturnRecord.ReturnID)
    ).scalars().all()
    if returns:
        return Batch(batch_id=batch_id, kind="return", items=list(returns))

    raise BatchNotFoundError(f"No rentals or returns found for batch {batch_id}.", batchID=batch_id)


def delivery_note(db: Session, batch_id: str) -> dict:
    # Local import: rental_service depends on this module for batch ids.
    from rental_stock.services.rental_service import serialize_rental, serialize_return

    batch = items_for_batch(db, batch_id)
    if batch.kind == "issue":
        rows = [serialize_rental(db, item) for item in batch.items]
        order_ids = sorted({item.OrderID for item in batch.items})
        total_items = sum(int(item.Quantity or 0) for item in batch.items)
        number = f"DL-BATCH-{batch_id}"
    else:
        rows = [serialize_return(item) for item in batch.items]
        order_ids = sorted({item.Rental.OrderID for item in batch.items if item.Rental})
        total_items = sum(int(item.ReturnQuantity or 0) for item in batch.items)
        number = f"RTN-BATCH-{batch_id}"

    return {
        "batchID": batch_id,
        "kind": batch.kind,
        "documentNumber": number,
        "orderIDs": order_ids,
        "totalItems": total_items,
        "items": rows,
        "createdAt": datetime.now(),
    }
