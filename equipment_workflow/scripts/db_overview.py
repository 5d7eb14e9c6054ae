#!/usr/bin/env python3
"""Database overview and integrity checks for the equipment workflow."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "Statuses",
    "Categories",
    "Items",
    "Requests",
    "Rentals",
    "Calibrations",
    "Maintenances",
    "ItemHistory",
    "ActivityLogs",
    "Notifications",
    "DocumentTypes",
    "Documents",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Items": [
        "ItemID",
        "ItemName",
        "SerialNumber",
        "Status",
        "DefaultRentalDays",
        "RequiresCalibration",
        "CalibrationInterval",
        "LastCalibration",
        "NextCalibration",
    ],
    "Requests": ["RequestID", "UserID", "ItemID", "RequestType", "ApprovedBy", "DecisionDate", "Status"],
    "Rentals": ["RentalID", "RequestID", "StartDate", "EndDate", "ActualReturnDate", "FineAmount", "Status"],
    "Calibrations": ["CalibrationID", "RequestID", "CalibrationDate", "Result", "CertificateNumber", "Status"],
    "Maintenances": ["MaintenanceID", "ItemID", "StartDate", "EndDate", "CompletedBy", "Status"],
    "ItemHistory": ["HistoryID", "ItemID", "ActivityType", "RelatedRequestID", "PerformedBy", "ActivityDate"],
}

# Each check counts offending rows; zero means healthy.
INTEGRITY_QUERIES: dict[str, tuple[tuple[str, ...], str]] = {
    "requests:multiple_open_per_item": (
        ("Requests",),
        """
        SELECT COUNT(*)
        FROM (
            SELECT ItemID
            FROM Requests
            WHERE Status IN ('pending', 'approved')
            GROUP BY ItemID
            HAVING COUNT(*) > 1
        ) d
        """,
    ),
    "requests:rental_and_calibration": (
        ("Requests", "Rentals", "Calibrations"),
        """
        SELECT COUNT(*)
        FROM Requests r
        JOIN Rentals rt ON rt.RequestID = r.RequestID
        JOIN Calibrations c ON c.RequestID = r.RequestID
        """,
    ),
    "requests:approved_without_fulfilment": (
        ("Requests", "Rentals", "Calibrations"),
        """
        SELECT COUNT(*)
        FROM Requests r
        LEFT JOIN Rentals rt ON rt.RequestID = r.RequestID
        LEFT JOIN Calibrations c ON c.RequestID = r.RequestID
        WHERE r.Status IN ('approved', 'closed')
          AND rt.RentalID IS NULL
          AND c.CalibrationID IS NULL
        """,
    ),
    "rentals:returned_without_return_date": (
        ("Rentals",),
        "SELECT COUNT(*) FROM Rentals WHERE Status = 'returned' AND ActualReturnDate IS NULL",
    ),
    "items:open_request_on_available_item": (
        ("Items", "Requests"),
        """
        SELECT COUNT(*)
        FROM Items i
        JOIN Requests r ON r.ItemID = i.ItemID
        WHERE i.Status = 'available'
          AND r.Status IN ('pending', 'approved')
        """,
    ),
    "maintenance:in_progress_on_idle_item": (
        ("Items", "Maintenances"),
        """
        SELECT COUNT(*)
        FROM Maintenances m
        JOIN Items i ON i.ItemID = m.ItemID
        WHERE m.Status = 'in_progress'
          AND i.Status <> 'in_maintenance'
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


def _table_names(engine: Engine) -> set[str]:
    return set(inspect(engine).get_table_names())


def _column_names(engine: Engine, table_name: str) -> set[str]:
    return {str(column["name"]) for column in inspect(engine).get_columns(table_name)}


def run_existence_checks(engine: Engine) -> list[CheckResult]:
    present = _table_names(engine)
    return [
        CheckResult(f"table:{table}", table in present, "present" if table in present else "missing")
        for table in EXPECTED_TABLES
    ]


def run_column_checks(engine: Engine) -> list[CheckResult]:
    present = _table_names(engine)
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in present:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = _column_names(engine, table)
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def run_integrity_checks(engine: Engine) -> list[CheckResult]:
    present = _table_names(engine)
    checks: list[CheckResult] = []
    for name, (tables, sql) in INTEGRITY_QUERIES.items():
        if any(table not in present for table in tables):
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

    if "Requests" in present:
        rows = _rows(
            engine,
            """
            SELECT RequestID, ItemID, UserID, RequestType, Status
            FROM Requests
            ORDER BY RequestID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("Requests (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")

    if "ItemHistory" in present:
        rows = _rows(
            engine,
            """
            SELECT HistoryID, ItemID, ActivityType, PerformedBy, ActivityDate
            FROM ItemHistory
            ORDER BY HistoryID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("ItemHistory (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Equipment workflow DB overview")
    parser.add_argument("--db-url", default=os.environ.get("WORKFLOW_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("WORKFLOW_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        # Force a quick connectivity check first.
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    integrity = run_integrity_checks(engine)
    _print_results("Table Existence", run_existence_checks(engine))
    _print_results("Column Checks", run_column_checks(engine))
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    _print_samples(engine, args.samples)
    return 0 if all(check.ok for check in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
