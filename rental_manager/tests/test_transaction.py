import unittest
from unittest import mock

from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from rental_manager.models.rental_models import Item, ItemKind, Order
from rental_manager.services.errors import ConcurrencyConflict, ValidationError
from rental_manager.services.transaction import CONFLICT_RETRY_ATTEMPTS, atomic_operation, lock_items
from rental_manager.tests.support import EngineTestCase


class _DriverError(Exception):
    def __init__(self, message, pgcode=None):
        super().__init__(message)
        self.pgcode = pgcode


class AtomicOperationTests(EngineTestCase):
    def flaky_insert(self, error, failures):
        """Operation that inserts one item per attempt and raises ``error`` on the first ``failures`` attempts."""
        attempts = []

        @atomic_operation
        def insert_item(db):
            attempts.append(len(attempts) + 1)
            db.add(Item(Sku=f"TRY-{len(attempts)}", Name="Retry row", Kind=ItemKind.ATOMIC, Revision=0))
            db.flush()
            if len(attempts) <= failures:
                raise error
            return len(attempts)

        return insert_item, attempts

    def stored_skus(self):
        return list(self.db.execute(select(Item.Sku).order_by(Item.Sku)).scalars())

    def test_conflict_is_retried_after_rolling_back(self):
        insert_item, attempts = self.flaky_insert(ConcurrencyConflict("Item 1 changed while acquiring lock."), 1)

        with self.assertLogs("rental_manager.transactions", level="WARNING") as logs:
            self.assertEqual(insert_item(self.db), 2)

        self.assertEqual(attempts, [1, 2])
        self.assertEqual(self.stored_skus(), ["TRY-2"])
        self.assertIn("op=insert_item attempt=1/", logs.output[0])

    def test_conflict_surfaces_once_retries_run_out(self):
        insert_item, attempts = self.flaky_insert(ConcurrencyConflict("still busy"), CONFLICT_RETRY_ATTEMPTS)

        with self.assertLogs("rental_manager.transactions", level="WARNING"):
            with self.assertRaises(ConcurrencyConflict):
                insert_item(self.db)

        self.assertEqual(len(attempts), CONFLICT_RETRY_ATTEMPTS)
        self.assertEqual(self.stored_skus(), [])

    def test_stale_rows_are_reported_as_conflicts(self):
        insert_item, attempts = self.flaky_insert(StaleDataError("UPDATE statement matched 0 rows"), CONFLICT_RETRY_ATTEMPTS)

        with self.assertLogs("rental_manager.transactions", level="WARNING"):
            with self.assertRaises(ConcurrencyConflict) as ctx:
                insert_item(self.db)

        self.assertIn("matched 0 rows", str(ctx.exception))
        self.assertEqual(len(attempts), CONFLICT_RETRY_ATTEMPTS)
        self.assertEqual(self.stored_skus(), [])

    def test_serialization_failures_are_retried(self):
        error = OperationalError("UPDATE Items", {}, _DriverError("could not serialize access", pgcode="40001"))
        insert_item, attempts = self.flaky_insert(error, 1)

        with self.assertLogs("rental_manager.transactions", level="WARNING"):
            insert_item(self.db)

        self.assertEqual(attempts, [1, 2])
        self.assertEqual(self.stored_skus(), ["TRY-2"])

    def test_other_database_errors_are_not_retried(self):
        error = OperationalError("UPDATE Items", {}, _DriverError("disk I/O error"))
        insert_item, attempts = self.flaky_insert(error, CONFLICT_RETRY_ATTEMPTS)

        with self.assertRaises(OperationalError):
            insert_item(self.db)

        self.assertEqual(attempts, [1])
        self.assertEqual(self.stored_skus(), [])

    def test_engine_errors_roll_back_without_retry(self):
        insert_item, attempts = self.flaky_insert(ValidationError("Quantity must be positive."), CONFLICT_RETRY_ATTEMPTS)

        with self.assertRaises(ValidationError):
            insert_item(self.db)

        self.assertEqual(attempts, [1])
        self.assertEqual(self.stored_skus(), [])


class LockItemsTests(EngineTestCase):
    def test_locks_in_ascending_order_and_bumps_revisions(self):
        a = self.make_atomic()
        b = self.make_atomic()

        self.assertEqual(lock_items(self.db, [b.ItemID, a.ItemID, b.ItemID]), [a.ItemID, b.ItemID])
        self.assertEqual([self.revision_of(a), self.revision_of(b)], [1, 1])
        self.assertEqual(lock_items(self.db, []), [])

    def test_revision_changed_underneath_raises_conflict(self):
        item = self.make_atomic()
        real_execute = self.db.execute
        calls = []

        def execute_with_rival_write(statement, *args, **kwargs):
            result = real_execute(statement, *args, **kwargs)
            if not calls:
                calls.append(statement)
                rows = result.freeze()
                # Another writer bumps the revision between the read and the compare-and-set.
                real_execute(
                    update(Item)
                    .where(Item.ItemID == item.ItemID)
                    .values(Revision=Item.Revision + 1)
                    .execution_options(synchronize_session=False)
                )
                return rows()
            return result

        with mock.patch.object(self.db, "execute", side_effect=execute_with_rival_write):
            with self.assertRaises(ConcurrencyConflict):
                lock_items(self.db, [item.ItemID])

        self.assertEqual(self.revision_of(item), 1)


class OrderVersionTests(EngineTestCase):
    def test_write_from_a_stale_session_is_retried_on_the_fresh_row(self):
        order = self.make_order()
        self.assertEqual(order.Version, 1)

        other = self.SessionLocal()
        try:
            theirs = other.get(Order, order.OrderID)
            theirs.Notes = "moved to dock B"
            other.commit()
        finally:
            other.close()

        seen_versions = []

        @atomic_operation
        def annotate(db, target, notes):
            seen_versions.append(target.Version)
            target.Notes = notes
            db.flush()
            return target

        with self.assertLogs("rental_manager.transactions", level="WARNING"):
            annotate(self.db, order, "customer pickup")

        self.assertEqual(seen_versions, [1, 2])
        self.assertEqual(order.Version, 3)
        self.assertEqual(self.db.get(Order, order.OrderID).Notes, "customer pickup")

    def test_flushing_a_stale_order_raises(self):
        order = self.make_order()
        other = self.SessionLocal()
        try:
            other.get(Order, order.OrderID).Notes = "first"
            other.commit()
        finally:
            other.close()

        order.Notes = "second"
        with self.assertRaises(StaleDataError):
            self.db.flush()
        self.db.rollback()


if __name__ == "__main__":
    unittest.main()
