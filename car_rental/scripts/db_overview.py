#!/usr/bin/env python3
"""Database overview and integrity checks for the car rental store."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "VehicleTypes",
    "Vehicles",
    "Customers",
    "Bookings",
    "AuditLogs",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Vehicles": [
        "VehicleID",
        "VehicleTypeID",
        "LicensePlate",
        "DailyRentalPrice",
        "DepositAmount",
        "Status",
        "Version",
    ],
    "Customers": ["CustomerID", "Email", "Balance", "Version"],
    "Bookings": [
        "BookingID",
        "BookingNumber",
        "VehicleID",
        "CustomerID",
        "StartDate",
        "EndDate",
        "DailyRate",
        "TotalCost",
        "DepositAmount",
        "AmountPaid",
        "BookingStatus",
        "PaymentStatus",
        "Version",
    ],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "CreatedAt"],
}

# name -> (tables needed, query counting offending rows)
INTEGRITY_CHECKS: dict[str, tuple[list[str], str]] = {
    "customers:negative_balance": (
        ["Customers"],
        "SELECT COUNT(*) FROM Customers WHERE Balance < 0",
    ),
    "vehicles:multiple_confirmed_bookings": (
        ["Bookings"],
        """
        SELECT COUNT(*)
        FROM (
            SELECT VehicleID
            FROM Bookings
            WHERE BookingStatus = 'CONFIRMED'
            GROUP BY VehicleID
            HAVING COUNT(*) > 1
        ) d
        """,
    ),
    "vehicles:unavailable_without_confirmed_booking": (
        ["Vehicles", "Bookings"],
        """
        SELECT COUNT(*)
        FROM Vehicles v
        WHERE v.Status = 'UNAVAILABLE'
          AND NOT EXISTS (
              SELECT 1 FROM Bookings b
              WHERE b.VehicleID = v.VehicleID AND b.BookingStatus = 'CONFIRMED'
          )
        """,
    ),
    "bookings:confirmed_on_available_vehicle": (
        ["Vehicles", "Bookings"],
        """
        SELECT COUNT(*)
        FROM Bookings b
        JOIN Vehicles v ON v.VehicleID = b.VehicleID
        WHERE b.BookingStatus = 'CONFIRMED' AND v.Status = 'AVAILABLE'
        """,
    ),
    "bookings:money_held_after_cancel_or_reject": (
        ["Bookings"],
        """
        SELECT COUNT(*)
        FROM Bookings
        WHERE BookingStatus IN ('CANCELLED', 'REJECTED') AND AmountPaid <> 0
        """,
    ),
    "bookings:end_before_start": (
        ["Bookings"],
        "SELECT COUNT(*) FROM Bookings WHERE EndDate < StartDate",
    ),
    "bookings:orphan_vehicle_or_customer": (
        ["Vehicles", "Customers", "Bookings"],
        """
        SELECT COUNT(*)
        FROM Bookings b
        LEFT JOIN Vehicles v ON v.VehicleID = b.VehicleID
        LEFT JOIN Customers c ON c.CustomerID = b.CustomerID
        WHERE v.VehicleID IS NULL OR c.CustomerID IS NULL
        """,
    ),
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


def _run_existence_checks(tables: set[str]) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table in EXPECTED_TABLES:
        exists = table in tables
        results.append(CheckResult(f"table:{table}", exists, "present" if exists else "missing"))
    return results


def _run_column_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    inspector = inspect(engine)
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in tables:
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


def _run_integrity_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    checks: list[CheckResult] = []
    for name, (needed, sql) in INTEGRITY_CHECKS.items():
        if not all(table in tables for table in needed):
            checks.append(CheckResult(name, False, "table missing"))
            continue
        count = int(_scalar(engine, sql) or 0)
        checks.append(CheckResult(name, count == 0, f"count={count}"))
    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine, tables: set[str]) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if table not in tables:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_samples(engine: Engine, tables: set[str], sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)

    if "Bookings" in tables:
        rows = _rows(
            engine,
            """
            SELECT BookingID, BookingNumber, VehicleID, CustomerID, BookingStatus, PaymentStatus, AmountPaid
            FROM Bookings
            ORDER BY BookingID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("Bookings (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")

    if "AuditLogs" in tables:
        rows = _rows(
            engine,
            """
            SELECT AuditID, EntityType, EntityID, Action, CreatedAt
            FROM AuditLogs
            ORDER BY AuditID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("AuditLogs (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Car rental DB overview")
    parser.add_argument("--db-url", default=os.environ.get("CAR_RENTAL_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("CAR_RENTAL_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        # Force a quick connectivity check first.
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    tables = set(inspect(engine).get_table_names())
    integrity = _run_integrity_checks(engine, tables)
    _print_results("Table Existence", _run_existence_checks(tables))
    _print_results("Column Checks", _run_column_checks(engine, tables))
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine, tables)
    _print_samples(engine, tables, args.samples)
    return 0 if all(row.ok for row in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
