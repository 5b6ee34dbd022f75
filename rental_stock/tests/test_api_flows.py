import unittest

from rental_stock.tests.helpers import StockTestCase

from fastapi.testclient import TestClient

import rental_stock.StockMan as app_module

ADMIN = {"X-Actor-ID": "7", "X-Actor-Role": "Admin"}


class ApiFlowTests(StockTestCase):
    def setUp(self):
        super().setUp()
        app_module.app.dependency_overrides[app_module.get_stock_db] = lambda: self.db
        self.client = TestClient(app_module.app)

    def tearDown(self):
        app_module.app.dependency_overrides.clear()
        super().tearDown()

    def _equipment(self, total_stock=10):
        response = self.client.post(
            "/api/equipment",
            json={"name": "Scaffold frame", "totalStock": total_stock, "dailyRate": 12.5},
            headers=ADMIN,
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["equipmentID"]

    def _order(self):
        response = self.client.post("/api/orders", json={"customerID": 3}, headers=ADMIN)
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["orderID"]

    def _availability(self, equipment_id):
        return self.client.get(f"/api/equipment/{equipment_id}/availability").json()["availableStock"]

    def test_healthz(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").status_code, 200)

    def test_mutations_require_admin_actor(self):
        anonymous = self.client.post("/api/equipment", json={"name": "Drill", "totalStock": 1})
        self.assertEqual(anonymous.status_code, 401)
        staff = self.client.post(
            "/api/equipment",
            json={"name": "Drill", "totalStock": 1},
            headers={"X-Actor-ID": "8", "X-Actor-Role": "Staff"},
        )
        self.assertEqual(staff.status_code, 403)

    def test_rental_return_flow(self):
        equipment_id = self._equipment(10)
        order_id = self._order()

        created = self.client.post(
            "/api/rentals",
            json={
                "orderID": order_id,
                "equipmentID": equipment_id,
                "quantity": 7,
                "issueDate": "2024-03-01",
                "plannedReturnDate": "2024-03-08",
                "status": "issued",
            },
            headers=ADMIN,
        )
        self.assertEqual(created.status_code, 200, created.text)
        rental_id = created.json()["rentalID"]
        self.assertEqual(created.json()["dailyRate"], 12.5)
        self.assertEqual(self._availability(equipment_id), 3)

        short = self.client.post(
            "/api/rentals",
            json={
                "orderID": order_id,
                "equipmentID": equipment_id,
                "quantity": 5,
                "issueDate": "2024-03-01",
                "plannedReturnDate": "2024-03-08",
            },
            headers=ADMIN,
        )
        self.assertEqual(short.status_code, 409)
        body = short.json()
        self.assertEqual(body["code"], "insufficient_stock")
        self.assertEqual(body["available"], 3)
        self.assertEqual(body["shortfall"], 2)

        partial = self.client.post(f"/api/rentals/{rental_id}/return", json={"returnQuantity": 4}, headers=ADMIN)
        self.assertEqual(partial.status_code, 200, partial.text)
        self.assertEqual(partial.json()["rental"]["status"], "issued")
        self.assertEqual(partial.json()["rental"]["outstandingQuantity"], 3)
        self.assertEqual(self._availability(equipment_id), 7)

        final = self.client.post(f"/api/rentals/{rental_id}/return", json={"returnQuantity": 3}, headers=ADMIN)
        self.assertEqual(final.json()["rental"]["status"], "returned")
        self.assertEqual(self._availability(equipment_id), 10)

        again = self.client.post(f"/api/rentals/{rental_id}/return", json={"returnQuantity": 3}, headers=ADMIN)
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["code"], "over_release")

    def test_invalid_dates_and_damage_are_rejected(self):
        equipment_id = self._equipment(5)
        order_id = self._order()
        bad_dates = self.client.post(
            "/api/rentals",
            json={
                "orderID": order_id,
                "equipmentID": equipment_id,
                "quantity": 1,
                "issueDate": "2024-03-08",
                "plannedReturnDate": "2024-03-08",
            },
            headers=ADMIN,
        )
        self.assertEqual(bad_dates.status_code, 400)
        self.assertEqual(bad_dates.json()["code"], "invalid_date_range")
        self.assertEqual(self._availability(equipment_id), 5)

        rental = self.client.post(
            "/api/rentals",
            json={
                "orderID": order_id,
                "equipmentID": equipment_id,
                "quantity": 1,
                "issueDate": "2024-03-01",
                "plannedReturnDate": "2024-03-08",
            },
            headers=ADMIN,
        ).json()
        damaged = self.client.post(
            f"/api/rentals/{rental['rentalID']}/return",
            json={"returnQuantity": 1, "condition": "damaged"},
            headers=ADMIN,
        )
        self.assertEqual(damaged.status_code, 400)
        self.assertEqual(damaged.json()["code"], "missing_damage_description")
        self.assertEqual(self.client.get(f"/api/orders/{order_id}/returns").json(), [])

    def test_batch_issue_and_delivery_note(self):
        equipment_id = self._equipment(6)
        order_id = self._order()
        response = self.client.post(
            "/api/rentals/batch",
            json={
                "orderID": order_id,
                "issueDate": "2024-03-01",
                "plannedReturnDate": "2024-03-05",
                "items": [{"equipmentID": equipment_id, "quantity": 2}, {"equipmentID": equipment_id, "quantity": 1}],
            },
            headers=ADMIN,
        )
        self.assertEqual(response.status_code, 200, response.text)
        batch_id = response.json()["batchID"]
        self.assertTrue(batch_id.startswith("ISSUE-"))

        batch = self.client.get(f"/api/batches/{batch_id}").json()
        self.assertEqual([item["quantity"] for item in batch["items"]], [2, 1])

        note = self.client.get(f"/api/batches/{batch_id}/delivery-note").json()
        self.assertEqual(note["documentNumber"], f"DL-BATCH-{batch_id}")
        self.assertEqual(note["totalItems"], 3)

        rental_ids = [item["rentalID"] for item in batch["items"]]
        returned = self.client.post(
            "/api/returns/batch",
            json={"items": [{"rentalID": rental_id, "returnQuantity": 1} for rental_id in rental_ids]},
            headers=ADMIN,
        )
        self.assertEqual(returned.status_code, 200, returned.text)
        self.assertEqual(len(returned.json()["returns"]), 2)
        self.assertEqual(self._availability(equipment_id), 5)

        missing = self.client.get("/api/batches/ISSUE-nothing")
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["code"], "batch_not_found")

    def test_sale_and_write_off_endpoints(self):
        equipment_id = self._equipment(8)
        sale = self.client.post(
            "/api/sales",
            json={"equipmentID": equipment_id, "quantity": 2, "unitPrice": 150},
            headers=ADMIN,
        ).json()
        self.assertEqual(sale["status"], "pending")
        confirmed = self.client.post(f"/api/sales/{sale['saleID']}/confirm", headers=ADMIN)
        self.assertEqual(confirmed.json()["status"], "confirmed")

        write_off = self.client.post(
            "/api/write-offs",
            json={"equipmentID": equipment_id, "quantity": 1, "reason": "Cracked"},
            headers=ADMIN,
        ).json()
        cancelled = self.client.post(f"/api/write-offs/{write_off['writeOffID']}/cancel", headers=ADMIN)
        self.assertEqual(cancelled.json()["status"], "cancelled")
        again = self.client.post(f"/api/write-offs/{write_off['writeOffID']}/cancel", headers=ADMIN)
        self.assertEqual(again.status_code, 409)

        snapshot = self.client.get(f"/api/equipment/{equipment_id}/availability").json()
        self.assertEqual(snapshot["totalStock"], 6)
        self.assertEqual(snapshot["availableStock"], 6)

    def test_stock_adjustment_and_status(self):
        equipment_id = self._equipment(3)
        adjusted = self.client.post(
            f"/api/equipment/{equipment_id}/stock-adjustment",
            json={"delta": 2, "reason": "Delivery"},
            headers=ADMIN,
        )
        self.assertEqual(adjusted.json()["totalStock"], 5)

        retired = self.client.put(f"/api/equipment/{equipment_id}/status", json={"status": "retired"}, headers=ADMIN)
        self.assertEqual(retired.json()["status"], "retired")
        order_id = self._order()
        blocked = self.client.post(
            "/api/rentals",
            json={
                "orderID": order_id,
                "equipmentID": equipment_id,
                "quantity": 1,
                "issueDate": "2024-03-01",
                "plannedReturnDate": "2024-03-08",
            },
            headers=ADMIN,
        )
        self.assertEqual(blocked.status_code, 409)
        self.assertEqual(blocked.json()["code"], "invalid_equipment_state")

        borrowed = self.client.put(f"/api/equipment/{equipment_id}/status", json={"status": "borrowed"}, headers=ADMIN)
        self.assertEqual(borrowed.status_code, 422)

    def test_duplicate_numbers_are_conflicts(self):
        payload = {"name": "Ladder", "totalStock": 2, "inventoryNumber": "EQ-LADDER-1"}
        self.assertEqual(self.client.post("/api/equipment", json=payload, headers=ADMIN).status_code, 200)
        duplicate = self.client.post("/api/equipment", json=payload, headers=ADMIN)
        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual(duplicate.json()["code"], "duplicate_number")
        self.assertEqual(duplicate.json()["inventoryNumber"], "EQ-LADDER-1")

        self.assertEqual(self.client.post("/api/orders", json={"orderNumber": "ORD-7"}, headers=ADMIN).status_code, 200)
        order = self.client.post("/api/orders", json={"orderNumber": "ORD-7"}, headers=ADMIN)
        self.assertEqual(order.status_code, 409)
        self.assertEqual(order.json()["orderNumber"], "ORD-7")

    def test_blank_name_and_reason_are_validation_errors(self):
        blank_name = self.client.post("/api/equipment", json={"name": "  ", "totalStock": 1}, headers=ADMIN)
        self.assertEqual(blank_name.status_code, 400)
        self.assertEqual(blank_name.json()["code"], "validation_failed")
        self.assertEqual(blank_name.json()["field"], "name")

        equipment_id = self._equipment(3)
        blank_reason = self.client.post(
            "/api/write-offs",
            json={"equipmentID": equipment_id, "quantity": 1, "reason": ""},
            headers=ADMIN,
        )
        self.assertEqual(blank_reason.status_code, 400)
        self.assertEqual(blank_reason.json()["code"], "validation_failed")
        self.assertEqual(self._availability(equipment_id), 3)

    def test_supplied_batch_id_groups_single_rentals(self):
        equipment_id = self._equipment(6)
        order_id = self._order()
        rental_ids = []
        for quantity in (2, 1):
            response = self.client.post(
                "/api/rentals",
                json={
                    "orderID": order_id,
                    "equipmentID": equipment_id,
                    "quantity": quantity,
                    "issueDate": "2024-03-01",
                    "plannedReturnDate": "2024-03-08",
                    "batchID": "ISSUE-manual-1",
                },
                headers=ADMIN,
            )
            self.assertEqual(response.status_code, 200, response.text)
            rental_ids.append(response.json()["rentalID"])

        batch = self.client.get("/api/batches/ISSUE-manual-1").json()
        self.assertEqual(batch["kind"], "issue")
        self.assertEqual([item["rentalID"] for item in batch["items"]], rental_ids)

        reused = self.client.post(
            f"/api/rentals/{rental_ids[0]}/return",
            json={"returnQuantity": 1, "batchID": "ISSUE-manual-1"},
            headers=ADMIN,
        )
        self.assertEqual(reused.status_code, 409)
        self.assertEqual(reused.json()["code"], "batch_kind_conflict")
        self.assertEqual(self._availability(equipment_id), 3)

    def test_inventory_check_flow(self):
        equipment_id = self._equipment(10)
        order_id = self._order()
        self.client.post(
            "/api/rentals",
            json={
                "orderID": order_id,
                "equipmentID": equipment_id,
                "quantity": 4,
                "issueDate": "2024-03-01",
                "plannedReturnDate": "2024-03-08",
            },
            headers=ADMIN,
        )

        created = self.client.post("/api/inventory-checks", json={"notes": "Spring count"}, headers=ADMIN)
        self.assertEqual(created.status_code, 200, created.text)
        check = created.json()
        self.assertEqual(check["status"], "in_progress")
        item_id = check["items"][0]["itemID"]
        self.assertEqual(check["items"][0]["expectedQuantity"], 10)

        early = self.client.post(f"/api/inventory-checks/{check['inventoryCheckID']}/complete", headers=ADMIN)
        self.assertEqual(early.status_code, 400)
        self.assertEqual(early.json()["code"], "validation_failed")

        counted = self.client.put(
            f"/api/inventory-checks/{check['inventoryCheckID']}/items/{item_id}",
            json={"actualQuantity": 7},
            headers=ADMIN,
        )
        self.assertEqual(counted.json()["discrepancies"], 1)
        done = self.client.post(
            f"/api/inventory-checks/{check['inventoryCheckID']}/complete",
            json={"adjustStock": True},
            headers=ADMIN,
        )
        self.assertEqual(done.status_code, 200, done.text)
        self.assertEqual(done.json()["status"], "completed")
        self.assertEqual(self._availability(equipment_id), 3)

        second = self.client.post("/api/inventory-checks", json={}, headers=ADMIN).json()
        self.client.put(
            f"/api/inventory-checks/{second['inventoryCheckID']}/items/{second['items'][0]['itemID']}",
            json={"actualQuantity": 2},
            headers=ADMIN,
        )
        impossible = self.client.post(f"/api/inventory-checks/{second['inventoryCheckID']}/complete", headers=ADMIN)
        self.assertEqual(impossible.status_code, 409)
        self.assertEqual(impossible.json()["code"], "insufficient_stock")
        cancelled = self.client.post(f"/api/inventory-checks/{second['inventoryCheckID']}/cancel", headers=ADMIN)
        self.assertEqual(cancelled.json()["status"], "cancelled")
        self.assertEqual(self.client.get(f"/api/equipment/{equipment_id}/availability").json()["totalStock"], 7)

    def test_unknown_equipment_is_not_found(self):
        response = self.client.get("/api/equipment/999/availability")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["equipmentID"], 999)


if __name__ == "__main__":
    unittest.main()
