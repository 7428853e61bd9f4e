import unittest

from rental_manager.models.rental_models import OrderLine, OrderStatus
from rental_manager.services.availability_service import (
    UNBOUNDED,
    availability,
    conflicting_orders,
    covers,
    get_availability,
)
from rental_manager.services.errors import ValidationError
from rental_manager.services.stock_ledger_service import adjust_stock, on_hand
from rental_manager.tests.support import WEEK_START, EngineTestCase, days


class AvailabilityTests(EngineTestCase):
    def book(self, item, quantity, status=OrderStatus.RESERVED, start=WEEK_START, length_days=3, **fields):
        order = self.make_order(start=start, length_days=length_days, status=status, **fields)
        order.Lines.append(OrderLine(ItemID=item.ItemID, Quantity=quantity))
        self.db.commit()
        return order

    def test_atomic_availability_subtracts_overlapping_commitments(self):
        item = self.make_atomic(stock=10)
        self.book(item, 6)

        self.assertEqual(availability(self.db, item.ItemID, WEEK_START, WEEK_START + days(3)), 4)
        self.assertEqual(availability(self.db, item.ItemID, WEEK_START + days(1), WEEK_START + days(2)), 4)

    def test_windows_are_half_open(self):
        item = self.make_atomic(stock=10)
        self.book(item, 6)

        # Ends exactly when the booking starts, and starts exactly when it ends.
        self.assertEqual(availability(self.db, item.ItemID, WEEK_START - days(2), WEEK_START), 10)
        self.assertEqual(availability(self.db, item.ItemID, WEEK_START + days(3), WEEK_START + days(5)), 10)

    def test_draft_cancelled_and_returned_orders_do_not_block(self):
        item = self.make_atomic(stock=10)
        self.book(item, 3, status=OrderStatus.DRAFT)
        self.book(item, 3, status=OrderStatus.CANCELLED)
        self.book(item, 3, status=OrderStatus.RETURNED)

        self.assertEqual(availability(self.db, item.ItemID, WEEK_START, WEEK_START + days(3)), 10)

    def test_exclude_order_id(self):
        item = self.make_atomic(stock=10)
        order = self.book(item, 6)

        self.assertEqual(
            availability(self.db, item.ItemID, WEEK_START, WEEK_START + days(3), exclude_order_id=order.OrderID),
            10,
        )

    def test_setup_and_cleanup_extend_the_blocking_window(self):
        item = self.make_atomic(stock=5)
        self.book(
            item,
            5,
            SetupStart=WEEK_START - days(1),
            CleanupEnd=WEEK_START + days(4),
        )

        self.assertEqual(availability(self.db, item.ItemID, WEEK_START - days(2), WEEK_START - days(1)), 5)
        self.assertEqual(availability(self.db, item.ItemID, WEEK_START - days(2), WEEK_START), 0)
        self.assertEqual(availability(self.db, item.ItemID, WEEK_START + days(3), WEEK_START + days(4)), 0)

    def test_composite_availability_is_min_over_components(self):
        a = self.make_atomic(stock=10)
        b = self.make_atomic(stock=3)
        kit = self.make_composite([(a, 2), (b, 1)])

        self.assertEqual(availability(self.db, kit.ItemID, WEEK_START, WEEK_START + days(1)), 3)

        adjust_stock(self.db, b.ItemID, 5, "Found", None, "hal")
        self.assertEqual(availability(self.db, kit.ItemID, WEEK_START, WEEK_START + days(1)), 5)

    def test_composite_bookings_consume_component_stock(self):
        a = self.make_atomic(stock=10)
        b = self.make_atomic(stock=3)
        kit = self.make_composite([(a, 2), (b, 1)])
        self.book(kit, 2)

        self.assertEqual(availability(self.db, a.ItemID, WEEK_START, WEEK_START + days(1)), 6)
        self.assertEqual(availability(self.db, b.ItemID, WEEK_START, WEEK_START + days(1)), 1)
        self.assertEqual(availability(self.db, kit.ItemID, WEEK_START, WEEK_START + days(1)), 1)

    def test_atomic_bookings_limit_composites(self):
        a = self.make_atomic(stock=10)
        b = self.make_atomic(stock=3)
        kit = self.make_composite([(a, 2), (b, 1)])
        self.book(a, 7)

        self.assertEqual(availability(self.db, kit.ItemID, WEEK_START, WEEK_START + days(1)), 1)

    def test_services_are_unbounded(self):
        crew = self.make_service()
        result = availability(self.db, crew.ItemID, WEEK_START, WEEK_START + days(1))

        self.assertIs(result, UNBOUNDED)
        self.assertTrue(covers(result, 10_000))
        self.assertTrue(get_availability(self.db, crew.ItemID, WEEK_START, WEEK_START + days(1))["unbounded"])

    def test_invalid_window_and_empty_composite(self):
        item = self.make_atomic(stock=1)
        with self.assertRaises(ValidationError):
            availability(self.db, item.ItemID, WEEK_START, WEEK_START)
        with self.assertRaises(ValidationError):
            availability(self.db, item.ItemID, WEEK_START + days(1), WEEK_START)

        empty_kit = self.make_composite([])
        with self.assertRaises(ValidationError):
            availability(self.db, empty_kit.ItemID, WEEK_START, WEEK_START + days(1))

    def test_availability_never_exceeds_on_hand(self):
        item = self.make_atomic(stock=4)
        self.book(item, 9)

        result = availability(self.db, item.ItemID, WEEK_START, WEEK_START + days(1))
        self.assertEqual(result, 0)
        self.assertLessEqual(result, on_hand(self.db, item.ItemID))

    def test_report_and_conflicts(self):
        a = self.make_atomic(stock=10)
        kit = self.make_composite([(a, 2)])
        direct = self.book(a, 3)
        bundled = self.book(kit, 1, start=WEEK_START + days(1))
        self.book(a, 5, start=WEEK_START + days(10))

        report = get_availability(self.db, a.ItemID, WEEK_START, WEEK_START + days(3))
        self.assertEqual(report["available"], 5)
        self.assertEqual(report["onHand"], 10)
        self.assertEqual(report["committed"], 5)

        conflicts = conflicting_orders(self.db, a.ItemID, WEEK_START, WEEK_START + days(3))
        self.assertEqual([row["orderID"] for row in conflicts], [direct.OrderID, bundled.OrderID])
        self.assertEqual(conflicts[1]["consumes"], {a.ItemID: 2})


if __name__ == "__main__":
    unittest.main()
