#!/usr/bin/env python3
"""Stock overview and integrity checks for the rental stock database."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, func, inspect, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from rental_stock.models.stock_models import EquipmentLine, RentalItem, ReturnRecord
from rental_stock.services.stock_ledger import OUTSTANDING_RENTAL_STATES, snapshot_for_line

EXPECTED_TABLES = [
    "Equipment",
    "Orders",
    "Rentals",
    "Returns",
    "Sales",
    "WriteOffs",
    "AuditLogs",
    "InventoryChecks",
    "InventoryCheckItems",
]


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def run_existence_checks(engine: Engine) -> list[CheckResult]:
    present = set(inspect(engine).get_table_names())
    return [CheckResult(f"table:{table}", table in present, "present" if table in present else "missing") for table in EXPECTED_TABLES]


def _returned_by_rental(db: Session) -> dict[int, int]:
    rows = db.execute(
        select(ReturnRecord.RentalID, func.coalesce(func.sum(ReturnRecord.ReturnQuantity), 0)).group_by(ReturnRecord.RentalID)
    ).all()
    return {int(rental_id): int(total or 0) for rental_id, total in rows}


def run_integrity_checks(db: Session) -> list[CheckResult]:
    checks: list[CheckResult] = []

    negative = []
    for line in db.execute(select(EquipmentLine).order_by(EquipmentLine.EquipmentID)).scalars():
        snapshot = snapshot_for_line(db, line)
        if snapshot.available_stock < 0:
            negative.append(line.EquipmentID)
    checks.append(
        CheckResult(
            "equipment:negative_availability",
            not negative,
            f"count={len(negative)}" + (f" ids={negative}" if negative else ""),
        )
    )

    returned = _returned_by_rental(db)
    over_returned = []
    open_after_return = []
    closed_with_outstanding = []
    for rental in db.execute(select(RentalItem).order_by(RentalItem.RentalID)).scalars():
        back = returned.get(rental.RentalID, 0)
        if back > int(rental.Quantity or 0):
            over_returned.append(rental.RentalID)
        if rental.Status in OUTSTANDING_RENTAL_STATES and back >= int(rental.Quantity or 0):
            open_after_return.append(rental.RentalID)
        if rental.Status == "returned" and back < int(rental.Quantity or 0):
            closed_with_outstanding.append(rental.RentalID)

    checks.append(CheckResult("rentals:over_returned", not over_returned, f"count={len(over_returned)}"))
    checks.append(
        CheckResult("rentals:open_with_nothing_outstanding", not open_after_return, f"count={len(open_after_return)}")
    )
    checks.append(
        CheckResult(
            "rentals:returned_with_outstanding",
            not closed_with_outstanding,
            f"count={len(closed_with_outstanding)}",
        )
    )

    orphan_returns = db.execute(
        select(func.count(ReturnRecord.ReturnID))
        .select_from(ReturnRecord)
        .outerjoin(RentalItem, RentalItem.RentalID == ReturnRecord.RentalID)
        .where(RentalItem.RentalID.is_(None))
    ).scalar()
    checks.append(CheckResult("returns:orphan_rentalid", int(orphan_returns or 0) == 0, f"count={int(orphan_returns or 0)}"))

    orphan_rentals = db.execute(
        select(func.count(RentalItem.RentalID))
        .select_from(RentalItem)
        .outerjoin(EquipmentLine, EquipmentLine.EquipmentID == RentalItem.EquipmentID)
        .where(EquipmentLine.EquipmentID.is_(None))
    ).scalar()
    checks.append(CheckResult("rentals:orphan_equipmentid", int(orphan_rentals or 0) == 0, f"count={int(orphan_rentals or 0)}"))
    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_stock(db: Session) -> None:
    _print_section("Stock per Equipment Line")
    for line in db.execute(select(EquipmentLine).order_by(EquipmentLine.EquipmentID)).scalars():
        snapshot = snapshot_for_line(db, line)
        print(
            f"{line.EquipmentID} {line.InventoryNumber} {line.Name}: total={snapshot.total_stock} "
            f"available={snapshot.available_stock} rented={snapshot.rented} "
            f"pending_sale={snapshot.pending_sale} pending_write_off={snapshot.pending_write_off} status={line.Status}"
        )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Rental stock overview")
    parser.add_argument("--db-url", default=os.environ.get("RENTAL_STOCK_DB_URL", ""))
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("RENTAL_STOCK_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        existence = run_existence_checks(engine)
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    _print_results("Table Existence", existence)
    if not all(result.ok for result in existence):
        return 1

    with Session(engine) as db:
        integrity = run_integrity_checks(db)
        _print_results("Integrity Checks", integrity)
        _print_stock(db)
    return 0 if all(result.ok for result in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
