import os
import unittest

from fastapi.testclient import TestClient


os.environ.setdefault("RENTAL_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("CORS_ALLOW_ORIGINS", "http://localhost")

from rental_manager import RentalMan as app_module
from rental_manager.db.deps import get_rental_db
from rental_manager.models.rental_models import AuditLog
from rental_manager.tests.support import build_test_engine, build_test_session_factory

START = "2024-03-04T09:00:00"
DUE = "2024-03-07T09:00:00"


class ApiFlowTests(unittest.TestCase):
    def setUp(self):
        self.engine = build_test_engine()
        self.SessionLocal = build_test_session_factory(self.engine)

        def _override_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        app_module.app.dependency_overrides[get_rental_db] = _override_db
        self.client = TestClient(app_module.app)
        self.headers = {"X-Actor": "warehouse-1"}

    def tearDown(self):
        app_module.app.dependency_overrides.clear()
        self.engine.dispose()

    def _create_item(self, sku, kind="Atomic", tiers=None):
        response = self.client.post(
            "/api/items",
            json={"sku": sku, "name": sku.title(), "kind": kind, "priceTiers": tiers or {"Daily": 10}},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def _stock(self, item_id, quantity):
        response = self.client.post(
            f"/api/items/{item_id}/stock/set",
            json={"quantity": quantity, "notes": "initial count"},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def _create_order(self, lines, start=START, due=DUE):
        return self.client.post(
            "/api/orders",
            json={
                "customerID": 21,
                "salesPersonID": 4,
                "startDate": start,
                "returnDueDate": due,
                "lines": lines,
            },
            headers=self.headers,
        )

    def test_healthz(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").json(), {"status": "ok"})

    def test_overbooking_is_refused_with_shortage_detail(self):
        speaker = self._create_item("SPK-1")
        self._stock(speaker["itemID"], 10)

        first = self._create_order([{"itemID": speaker["itemID"], "quantity": 6}]).json()
        reserved = self.client.post(f"/api/orders/{first['orderID']}/reserve", headers=self.headers)
        self.assertEqual(reserved.status_code, 200, reserved.text)
        self.assertEqual(reserved.json()["status"], "Reserved")

        refused = self._create_order([{"itemID": speaker["itemID"], "quantity": 5}])
        self.assertEqual(refused.status_code, 409)
        detail = refused.json()["detail"]
        self.assertEqual(detail["error"], "insufficient_availability")
        self.assertEqual(
            detail["shortages"],
            [{"itemId": speaker["itemID"], "requested": 5, "available": 4, "shortfall": 1}],
        )

        availability = self.client.get(
            f"/api/items/{speaker['itemID']}/availability",
            params={"startDate": START, "endDate": DUE, "includeConflicts": "true"},
        ).json()
        self.assertEqual(availability["available"], 4)
        self.assertEqual([row["orderID"] for row in availability["conflicts"]], [first["orderID"]])

    def test_order_round_trip_through_checkout_and_return(self):
        cable = self._create_item("CBL-1", tiers={"Daily": 2, "Start": 1})
        light = self._create_item("LGT-1")
        kit = self._create_item("KIT-1", kind="Composite", tiers={"Daily": 30})
        self._stock(cable["itemID"], 10)
        self._stock(light["itemID"], 3)
        for child, quantity in ((cable, 2), (light, 1)):
            response = self.client.post(
                f"/api/items/{kit['itemID']}/components",
                json={"childItemID": child["itemID"], "quantity": quantity},
                headers=self.headers,
            )
            self.assertEqual(response.status_code, 200, response.text)

        kit_availability = self.client.get(
            f"/api/items/{kit['itemID']}/availability",
            params={"startDate": START, "endDate": DUE},
        ).json()
        self.assertEqual(kit_availability["available"], 3)

        order = self._create_order([{"itemID": kit["itemID"], "quantity": 2}]).json()
        self.assertEqual(order["totalCost"], 180)
        order_id = order["orderID"]

        for step, status in (("reserve", "Reserved"), ("checkout", "CheckedOut")):
            response = self.client.post(f"/api/orders/{order_id}/{step}", headers=self.headers)
            self.assertEqual(response.status_code, 200, response.text)
            self.assertEqual(response.json()["status"], status)
        self.assertEqual(self.client.get(f"/api/items/{cable['itemID']}/stock").json()["onHand"], 6)

        returned = self.client.post(f"/api/orders/{order_id}/transition", json={"targetStatus": "Returned"}, headers=self.headers)
        self.assertEqual(returned.status_code, 200, returned.text)
        self.assertEqual(self.client.get(f"/api/items/{cable['itemID']}/stock").json()["onHand"], 10)
        self.assertEqual(self.client.get(f"/api/items/{light['itemID']}/stock").json()["onHand"], 3)

        history = self.client.get(f"/api/orders/{order_id}/history").json()
        self.assertEqual(
            [row["status"] for row in history["statusHistory"]],
            ["Draft", "Reserved", "CheckedOut", "Returned"],
        )
        db = self.SessionLocal()
        try:
            actors = {row.UserID for row in db.query(AuditLog).filter_by(EntityType="Order", EntityID=order_id)}
        finally:
            db.close()
        self.assertEqual(actors, {"warehouse-1"})

    def test_invalid_transition_and_frozen_lines(self):
        speaker = self._create_item("SPK-2")
        self._stock(speaker["itemID"], 2)
        order = self._create_order([{"itemID": speaker["itemID"], "quantity": 1}]).json()
        order_id = order["orderID"]

        response = self.client.post(f"/api/orders/{order_id}/return", headers=self.headers)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"]["currentStatus"], "Draft")
        self.assertEqual(response.json()["detail"]["targetStatus"], "Returned")

        response = self.client.post(f"/api/orders/{order_id}/transition", json={"targetStatus": "Draft"})
        self.assertEqual(response.status_code, 400)

        self.client.post(f"/api/orders/{order_id}/reserve")
        line_id = order["lines"][0]["orderLineID"]
        response = self.client.put(f"/api/orders/{order_id}/lines/{line_id}", json={"quantity": 2})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"]["error"], "invalid_state_transition")

        transitions = self.client.get(f"/api/orders/{order_id}/transitions").json()
        self.assertEqual(transitions["validTransitions"], ["Cancelled", "CheckedOut"])

    def test_line_editing_over_http(self):
        speaker = self._create_item("SPK-3", tiers={"Daily": 10})
        self._stock(speaker["itemID"], 5)
        order_id = self._create_order([]).json()["orderID"]

        added = self.client.post(f"/api/orders/{order_id}/lines", json={"itemID": speaker["itemID"], "quantity": 2})
        self.assertEqual(added.status_code, 200, added.text)
        self.assertEqual(added.json()["lineTotal"], 60)

        line_id = added.json()["orderLineID"]
        edited = self.client.put(f"/api/orders/{order_id}/lines/{line_id}", json={"quantity": 3})
        self.assertEqual(edited.json()["lineTotal"], 90)

        too_many = self.client.put(f"/api/orders/{order_id}/lines/{line_id}", json={"quantity": 6})
        self.assertEqual(too_many.status_code, 409)

        removed = self.client.delete(f"/api/orders/{order_id}/lines/{line_id}")
        self.assertEqual(removed.status_code, 200)
        self.assertEqual(self.client.get(f"/api/orders/{order_id}").json()["lines"], [])

    def test_catalog_errors_map_to_status_codes(self):
        kit = self._create_item("KIT-2", kind="Composite")
        self.assertEqual(self.client.get("/api/items/999").status_code, 404)
        self.assertEqual(self.client.get("/api/orders/999").status_code, 404)

        response = self.client.post(
            f"/api/items/{kit['itemID']}/components",
            json={"childItemID": kit["itemID"], "quantity": 1},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"]["error"], "cycle_detected")

        duplicate = self.client.post("/api/items", json={"sku": "KIT-2", "name": "Again", "kind": "Atomic"})
        self.assertEqual(duplicate.status_code, 400)

        bad_window = self.client.get(
            f"/api/items/{kit['itemID']}/availability",
            params={"startDate": DUE, "endDate": START},
        )
        self.assertEqual(bad_window.status_code, 400)

    def test_stock_adjustments_over_http(self):
        speaker = self._create_item("SPK-4")
        self._stock(speaker["itemID"], 3)

        response = self.client.post(
            f"/api/items/{speaker['itemID']}/stock/adjust",
            json={"delta": -5, "reason": "Loss"},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["detail"]["error"], "insufficient_stock")

        response = self.client.post(
            f"/api/items/{speaker['itemID']}/stock/adjust",
            json={"delta": -1, "reason": "Loss", "notes": "cracked cone"},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["stock"]["onHand"], 2)
        self.assertEqual(response.json()["stock"]["stockStatus"], "low_stock")

        movements = self.client.get(f"/api/items/{speaker['itemID']}/stock/movements").json()
        self.assertEqual([row["delta"] for row in movements], [-1, 3])
        self.assertEqual(movements[0]["createdBy"], "warehouse-1")


if __name__ == "__main__":
    unittest.main()
