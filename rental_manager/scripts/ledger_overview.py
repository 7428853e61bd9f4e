#!/usr/bin/env python3
"""Ledger overview and integrity checks for the rental engine database."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "Items",
    "ItemPriceTiers",
    "ItemComponents",
    "StockMovements",
    "Orders",
    "OrderLines",
    "AuditLogs",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Items": ["ItemID", "Sku", "Name", "Kind", "Revision", "CreatedDate", "UpdatedDate"],
    "ItemComponents": ["ComponentID", "ParentItemID", "ChildItemID", "Quantity", "Position"],
    "StockMovements": ["MovementID", "ItemID", "OrderID", "Delta", "Reason", "Notes", "CreatedBy", "CreatedAt"],
    "Orders": ["OrderID", "CustomerID", "SalesPersonID", "Status", "StartDate", "ReturnDueDate", "TotalCost", "Version"],
    "OrderLines": ["OrderLineID", "OrderID", "ItemID", "Quantity", "LineTotal"],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "UserID", "CreatedAt"],
}


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def _table_names(engine: Engine) -> set[str]:
    return set(inspect(engine).get_table_names())


def run_existence_checks(engine: Engine) -> list[CheckResult]:
    present = _table_names(engine)
    results: list[CheckResult] = []
    for table in EXPECTED_TABLES:
        exists = table in present
        results.append(CheckResult(f"table:{table}", exists, "present" if exists else "missing"))
    return results


def run_column_checks(engine: Engine) -> list[CheckResult]:
    present = _table_names(engine)
    inspector = inspect(engine)
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in present:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = {column["name"] for column in inspector.get_columns(table)}
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def _count_check(engine: Engine, name: str, sql: str) -> CheckResult:
    count = int(_scalar(engine, sql) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def run_integrity_checks(engine: Engine) -> list[CheckResult]:
    present = _table_names(engine)
    checks: list[CheckResult] = []

    if {"Items", "StockMovements"} <= present:
        checks.append(
            _count_check(
                engine,
                "ledger:negative_on_hand",
                """
                SELECT COUNT(*)
                FROM (
                    SELECT ItemID
                    FROM StockMovements
                    GROUP BY ItemID
                    HAVING SUM(Delta) < 0
                ) n
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "ledger:movements_on_non_atomic_items",
                """
                SELECT COUNT(*)
                FROM StockMovements m
                JOIN Items i ON i.ItemID = m.ItemID
                WHERE i.Kind <> 'Atomic'
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "ledger:lifecycle_movements_without_order",
                """
                SELECT COUNT(*)
                FROM StockMovements
                WHERE Reason IN ('Checkout', 'Return') AND OrderID IS NULL
                """,
            )
        )

    if {"Orders", "StockMovements"} <= present:
        checks.append(
            _count_check(
                engine,
                "orders:returned_with_unbalanced_ledger",
                """
                SELECT COUNT(*)
                FROM (
                    SELECT m.OrderID, m.ItemID
                    FROM StockMovements m
                    JOIN Orders o ON o.OrderID = m.OrderID
                    WHERE o.Status = 'Returned' AND m.Reason IN ('Checkout', 'Return')
                    GROUP BY m.OrderID, m.ItemID
                    HAVING SUM(m.Delta) <> 0
                ) u
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "orders:ledger_rows_for_never_checked_out_orders",
                """
                SELECT COUNT(*)
                FROM StockMovements m
                JOIN Orders o ON o.OrderID = m.OrderID
                WHERE o.Status IN ('Draft', 'Reserved', 'Cancelled')
                """,
            )
        )

    if {"Items", "ItemComponents"} <= present:
        checks.append(
            _count_check(
                engine,
                "components:non_atomic_child",
                """
                SELECT COUNT(*)
                FROM ItemComponents c
                JOIN Items i ON i.ItemID = c.ChildItemID
                WHERE i.Kind <> 'Atomic'
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "components:non_composite_parent",
                """
                SELECT COUNT(*)
                FROM ItemComponents c
                JOIN Items i ON i.ItemID = c.ParentItemID
                WHERE i.Kind <> 'Composite'
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "components:non_positive_quantity",
                "SELECT COUNT(*) FROM ItemComponents WHERE Quantity < 1",
            )
        )

    if {"Orders", "OrderLines"} <= present:
        checks.append(
            _count_check(
                engine,
                "orderlines:orphan_orderid",
                """
                SELECT COUNT(*)
                FROM OrderLines l
                LEFT JOIN Orders o ON o.OrderID = l.OrderID
                WHERE o.OrderID IS NULL
                """,
            )
        )

    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    present = _table_names(engine)
    for table in EXPECTED_TABLES:
        if table not in present:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)
    present = _table_names(engine)

    if "StockMovements" in present:
        rows = _rows(
            engine,
            """
            SELECT MovementID, ItemID, OrderID, Delta, Reason, CreatedBy, CreatedAt
            FROM StockMovements
            ORDER BY MovementID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("StockMovements (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")

    if "AuditLogs" in present:
        rows = _rows(
            engine,
            """
            SELECT AuditID, EntityType, EntityID, Action, UserID, CreatedAt
            FROM AuditLogs
            ORDER BY AuditID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("AuditLogs (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Rental engine ledger overview")
    parser.add_argument("--db-url", default=os.environ.get("RENTAL_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("RENTAL_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    sections = [
        ("Table Existence", run_existence_checks(engine)),
        ("Column Checks", run_column_checks(engine)),
        ("Integrity Checks", run_integrity_checks(engine)),
    ]
    for title, rows in sections:
        _print_results(title, rows)
    _print_row_counts(engine)
    _print_samples(engine, args.samples)
    return 0 if all(row.ok for _, rows in sections for row in rows) else 1


if __name__ == "__main__":
    sys.exit(main())
