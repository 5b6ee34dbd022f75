import unittest
from datetime import date

from rental_stock.tests.helpers import ISSUE_DATE, PLANNED_RETURN, StockTestCase

from rental_stock.models.stock_models import EquipmentLine, RentalItem, ReturnRecord
from rental_stock.services.equipment_service import get_equipment_or_404
from rental_stock.services.errors import (
    InsufficientStockError,
    InvalidConditionError,
    InvalidDateRangeError,
    InvalidQuantityError,
    InvalidRentalStateError,
    MissingDamageDescriptionError,
    NotFoundError,
    OverReleaseError,
)
from rental_stock.services.rental_service import (
    RentalLine,
    ReturnLine,
    create_rental,
    create_rental_batch,
    issue_rental,
    list_rentals_for_order,
    list_returns_for_order,
    outstanding_quantity,
    return_rental,
    return_rental_batch,
    serialize_rental,
)
from rental_stock.services.stock_ledger import available_stock


class RentalScenarioTests(StockTestCase):
    def test_partial_and_final_return_restore_availability(self):
        line = self.make_line(total_stock=10)
        order_a = self.make_order("A-1")
        order_b = self.make_order("B-1")
        self.assertEqual(available_stock(self.db, line.EquipmentID), 10)

        rental = create_rental(
            self.db, order_a.OrderID, line.EquipmentID, 7, ISSUE_DATE, PLANNED_RETURN, status="issued"
        )
        self.assertEqual(available_stock(self.db, line.EquipmentID), 3)

        with self.assertRaises(InsufficientStockError):
            create_rental(self.db, order_b.OrderID, line.EquipmentID, 5, ISSUE_DATE, PLANNED_RETURN)
        self.assertEqual(available_stock(self.db, line.EquipmentID), 3)

        return_rental(self.db, rental.RentalID, 4, condition="ok")
        rental = self.db.get(RentalItem, rental.RentalID)
        self.assertEqual(available_stock(self.db, line.EquipmentID), 7)
        self.assertEqual(outstanding_quantity(self.db, rental), 3)
        self.assertEqual(rental.Status, "issued")
        self.assertIsNone(rental.ActualReturnDate)

        return_rental(self.db, rental.RentalID, 3, condition="ok", actual_return_date=date(2024, 3, 6))
        rental = self.db.get(RentalItem, rental.RentalID)
        self.assertEqual(available_stock(self.db, line.EquipmentID), 10)
        self.assertEqual(rental.Status, "returned")
        self.assertEqual(rental.ActualReturnDate, date(2024, 3, 6))
        self.assertEqual(outstanding_quantity(self.db, rental), 0)

    def test_second_identical_return_is_rejected(self):
        line = self.make_line(total_stock=5)
        order = self.make_order()
        rental = create_rental(self.db, order.OrderID, line.EquipmentID, 2, ISSUE_DATE, PLANNED_RETURN)
        return_rental(self.db, rental.RentalID, 2)
        with self.assertRaises(OverReleaseError):
            return_rental(self.db, rental.RentalID, 2)
        self.assertEqual(self.db.query(ReturnRecord).count(), 1)
        self.assertEqual(available_stock(self.db, line.EquipmentID), 5)

    def test_return_more_than_outstanding_is_invalid_quantity(self):
        line = self.make_line(total_stock=5)
        order = self.make_order()
        rental = create_rental(self.db, order.OrderID, line.EquipmentID, 2, ISSUE_DATE, PLANNED_RETURN)
        with self.assertRaises(InvalidQuantityError):
            return_rental(self.db, rental.RentalID, 3)
        with self.assertRaises(InvalidQuantityError):
            return_rental(self.db, rental.RentalID, 0)


class RentalValidationTests(StockTestCase):
    def test_planned_return_must_follow_issue_date(self):
        line = self.make_line(total_stock=5)
        order = self.make_order()
        for planned in (ISSUE_DATE, date(2024, 2, 1)):
            with self.assertRaises(InvalidDateRangeError):
                create_rental(self.db, order.OrderID, line.EquipmentID, 1, ISSUE_DATE, planned)
        self.assertEqual(self.db.query(RentalItem).count(), 0)
        self.assertEqual(available_stock(self.db, line.EquipmentID), 5)

    def test_damaged_return_requires_description(self):
        line = self.make_line(total_stock=5)
        order = self.make_order()
        rental = create_rental(self.db, order.OrderID, line.EquipmentID, 2, ISSUE_DATE, PLANNED_RETURN)
        for description in (None, "", "   "):
            with self.assertRaises(MissingDamageDescriptionError):
                return_rental(self.db, rental.RentalID, 1, condition="damaged", damage_description=description)
        self.assertEqual(self.db.query(ReturnRecord).count(), 0)
        self.assertEqual(available_stock(self.db, line.EquipmentID), 3)

    def test_damaged_return_with_description_is_recorded(self):
        line = self.make_line(total_stock=5)
        order = self.make_order()
        rental = create_rental(self.db, order.OrderID, line.EquipmentID, 2, ISSUE_DATE, PLANNED_RETURN)
        record = return_rental(
            self.db,
            rental.RentalID,
            1,
            condition="damaged",
            damage_description="Bent brace",
            additional_charges=15,
        )
        self.assertEqual(record.Condition, "damaged")
        self.assertEqual(record.DamageDescription, "Bent brace")
        self.assertEqual(available_stock(self.db, line.EquipmentID), 4)

    def test_damaged_return_keeps_line_in_service(self):
        line = self.make_line(total_stock=2)
        order = self.make_order()
        rental = create_rental(self.db, order.OrderID, line.EquipmentID, 2, ISSUE_DATE, PLANNED_RETURN)
        self.assertEqual(self.db.get(EquipmentLine, line.EquipmentID).Status, "borrowed")
        return_rental(self.db, rental.RentalID, 1, condition="damaged", damage_description="Cracked plank")
        return_rental(self.db, rental.RentalID, 1, condition="missing", damage_description="Not on site")
        # Units come back to the pool; taking them out is a separate write-off.
        self.assertEqual(self.db.get(EquipmentLine, line.EquipmentID).Status, "available")
        self.assertEqual(available_stock(self.db, line.EquipmentID), 2)

    def test_unknown_condition_is_rejected(self):
        line = self.make_line(total_stock=5)
        order = self.make_order()
        rental = create_rental(self.db, order.OrderID, line.EquipmentID, 1, ISSUE_DATE, PLANNED_RETURN)
        with self.assertRaises(InvalidConditionError):
            return_rental(self.db, rental.RentalID, 1, condition="scratched")

    def test_unknown_order_is_rejected(self):
        line = self.make_line(total_stock=5)
        with self.assertRaises(NotFoundError):
            create_rental(self.db, 404, line.EquipmentID, 1, ISSUE_DATE, PLANNED_RETURN)
        self.assertEqual(available_stock(self.db, line.EquipmentID), 5)

    def test_daily_rate_is_snapshotted(self):
        line = self.make_line(total_stock=5, daily_rate=20)
        order = self.make_order()
        rental = create_rental(self.db, order.OrderID, line.EquipmentID, 1, ISSUE_DATE, PLANNED_RETURN)
        catalog = get_equipment_or_404(self.db, line.EquipmentID)
        catalog.DailyRate = 35
        self.db.commit()
        self.assertEqual(float(self.db.get(RentalItem, rental.RentalID).DailyRate), 20.0)


class RentalStateTests(StockTestCase):
    def test_issue_moves_created_to_issued(self):
        line = self.make_line(total_stock=5)
        order = self.make_order()
        rental = create_rental(self.db, order.OrderID, line.EquipmentID, 1, ISSUE_DATE, PLANNED_RETURN)
        self.assertEqual(issue_rental(self.db, rental.RentalID).Status, "issued")
        with self.assertRaises(InvalidRentalStateError):
            issue_rental(self.db, rental.RentalID)

    def test_created_rental_can_be_returned_directly(self):
        line = self.make_line(total_stock=5)
        order = self.make_order()
        rental = create_rental(self.db, order.OrderID, line.EquipmentID, 1, ISSUE_DATE, PLANNED_RETURN)
        return_rental(self.db, rental.RentalID, 1)
        rental = self.db.get(RentalItem, rental.RentalID)
        self.assertEqual(rental.Status, "returned")
        with self.assertRaises(InvalidRentalStateError):
            issue_rental(self.db, rental.RentalID)

    def test_initial_status_is_limited(self):
        line = self.make_line(total_stock=5)
        order = self.make_order()
        with self.assertRaises(InvalidRentalStateError):
            create_rental(self.db, order.OrderID, line.EquipmentID, 1, ISSUE_DATE, PLANNED_RETURN, status="returned")

    def test_last_unit_marks_line_borrowed_until_returned(self):
        line = self.make_line(total_stock=2)
        order = self.make_order()
        rental = create_rental(self.db, order.OrderID, line.EquipmentID, 2, ISSUE_DATE, PLANNED_RETURN)
        self.assertEqual(self.db.get(EquipmentLine, line.EquipmentID).Status, "borrowed")
        return_rental(self.db, rental.RentalID, 1)
        self.assertEqual(self.db.get(EquipmentLine, line.EquipmentID).Status, "available")


class RentalBatchTests(StockTestCase):
    def test_batch_issue_is_atomic(self):
        ladder = self.make_line(total_stock=5, name="Ladder")
        mixer = self.make_line(total_stock=1, name="Mixer")
        order = self.make_order()
        with self.assertRaises(InsufficientStockError):
            create_rental_batch(
                self.db,
                order.OrderID,
                [RentalLine(ladder.EquipmentID, 2), RentalLine(mixer.EquipmentID, 3)],
                ISSUE_DATE,
                PLANNED_RETURN,
            )
        self.assertEqual(self.db.query(RentalItem).count(), 0)
        self.assertEqual(available_stock(self.db, ladder.EquipmentID), 5)

    def test_batch_return_validates_every_line_first(self):
        line = self.make_line(total_stock=5)
        order = self.make_order()
        batch_id, rentals = create_rental_batch(
            self.db, order.OrderID, [RentalLine(line.EquipmentID, 1), RentalLine(line.EquipmentID, 2)], ISSUE_DATE, PLANNED_RETURN
        )
        with self.assertRaises(MissingDamageDescriptionError):
            return_rental_batch(
                self.db,
                [ReturnLine(rentals[0].RentalID, 1), ReturnLine(rentals[1].RentalID, 2, condition="missing")],
            )
        self.assertEqual(self.db.query(ReturnRecord).count(), 0)

    def test_batch_return_rolls_back_on_over_release(self):
        line = self.make_line(total_stock=5)
        order = self.make_order()
        _, rentals = create_rental_batch(
            self.db, order.OrderID, [RentalLine(line.EquipmentID, 1), RentalLine(line.EquipmentID, 2)], ISSUE_DATE, PLANNED_RETURN
        )
        with self.assertRaises(OverReleaseError):
            return_rental_batch(self.db, [ReturnLine(rentals[0].RentalID, 1), ReturnLine(rentals[1].RentalID, 5)])
        self.assertEqual(self.db.query(ReturnRecord).count(), 0)
        self.assertEqual(available_stock(self.db, line.EquipmentID), 2)

    def test_batch_return_records_every_line(self):
        line = self.make_line(total_stock=5)
        order = self.make_order()
        _, rentals = create_rental_batch(
            self.db, order.OrderID, [RentalLine(line.EquipmentID, 1), RentalLine(line.EquipmentID, 2)], ISSUE_DATE, PLANNED_RETURN
        )
        batch_id, records = return_rental_batch(
            self.db, [ReturnLine(rentals[0].RentalID, 1), ReturnLine(rentals[1].RentalID, 1)]
        )
        self.assertTrue(batch_id.startswith("RETURN-"))
        self.assertEqual([record.BatchID for record in records], [batch_id, batch_id])
        self.assertEqual(available_stock(self.db, line.EquipmentID), 4)
        self.assertEqual(len(list_returns_for_order(self.db, order.OrderID)), 2)

    def test_serialized_rental_reports_outstanding(self):
        line = self.make_line(total_stock=5)
        order = self.make_order()
        rental = create_rental(self.db, order.OrderID, line.EquipmentID, 3, ISSUE_DATE, PLANNED_RETURN)
        return_rental(self.db, rental.RentalID, 1)
        payload = serialize_rental(self.db, list_rentals_for_order(self.db, order.OrderID)[0])
        self.assertEqual(payload["returnedQuantity"], 1)
        self.assertEqual(payload["outstandingQuantity"], 2)
        self.assertEqual(payload["equipment"]["equipmentID"], line.EquipmentID)


if __name__ == "__main__":
    unittest.main()
