#!/usr/bin/env python3
"""Database overview and integrity checks for the asset lifecycle store."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from dotenv import load_dotenv
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base
from models import asset_models, directory_models  # noqa: F401  populate Base.metadata


EXPECTED_COLUMNS: dict[str, list[str]] = {
    table.name: [column.name for column in table.columns] for table in Base.metadata.sorted_tables
}
EXPECTED_TABLES = list(EXPECTED_COLUMNS)


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


def _table_exists(engine: Engine, table_name: str) -> bool:
    return inspect(engine).has_table(table_name)


def _column_names(engine: Engine, table_name: str) -> set[str]:
    return {str(column["name"]) for column in inspect(engine).get_columns(table_name)}


def create_missing_tables(engine: Engine) -> list[str]:
    missing = [table for table in EXPECTED_TABLES if not _table_exists(engine, table)]
    if missing:
        Base.metadata.create_all(engine, tables=[Base.metadata.tables[name] for name in missing])
    return missing


def _run_existence_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table in EXPECTED_TABLES:
        exists = _table_exists(engine, table)
        results.append(CheckResult(f"table:{table}", exists, "present" if exists else "missing"))
    return results


def _run_column_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if not _table_exists(engine, table):
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


def _count_check(engine: Engine, name: str, sql: str) -> CheckResult:
    count = int(_scalar(engine, sql) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def _run_integrity_checks(engine: Engine) -> list[CheckResult]:
    checks: list[CheckResult] = []

    if _table_exists(engine, "AssetDailyStates"):
        checks.append(
            _count_check(
                engine,
                "dailystates:duplicate_user_date_type",
                """
                SELECT COUNT(*)
                FROM (
                    SELECT UserID, Date, AssetType
                    FROM AssetDailyStates
                    GROUP BY UserID, Date, AssetType
                    HAVING COUNT(*) > 1
                ) d
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "dailystates:unknown_state",
                """
                SELECT COUNT(*)
                FROM AssetDailyStates
                WHERE CurrentState NOT IN
                    ('ready_for_collection', 'collected', 'not_collected', 'returned', 'not_returned', 'lost')
                """,
            )
        )

    if _table_exists(engine, "AssetStateAudit") and _table_exists(engine, "AssetDailyStates"):
        checks.append(
            _count_check(
                engine,
                "stateaudit:orphan_dailystateid",
                """
                SELECT COUNT(*)
                FROM AssetStateAudit a
                LEFT JOIN AssetDailyStates s ON s.StateID = a.DailyStateID
                WHERE a.DailyStateID IS NOT NULL AND s.StateID IS NULL
                """,
            )
        )

    if _table_exists(engine, "HistoricalAssetRecords"):
        checks.append(
            _count_check(
                engine,
                "historical:duplicate_date",
                """
                SELECT COUNT(*)
                FROM (
                    SELECT Date
                    FROM HistoricalAssetRecords
                    GROUP BY Date
                    HAVING COUNT(*) > 1
                ) d
                """,
            )
        )

    if _table_exists(engine, "AssetIncidents"):
        checks.append(
            _count_check(
                engine,
                "incidents:resolved_without_resolution",
                "SELECT COUNT(*) FROM AssetIncidents WHERE Status = 'resolved' AND Resolution IS NULL",
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
    for table in EXPECTED_TABLES:
        if not _table_exists(engine, table):
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_reset_markers(engine: Engine, sample_size: int) -> None:
    _print_section("Recent Daily Resets")
    if not _table_exists(engine, "AuditLogs"):
        print("AuditLogs: missing")
        return
    rows = _rows(
        engine,
        """
        SELECT EntityID, UserID, CreatedAt, Details
        FROM AuditLogs
        WHERE EntityType = 'DailyReset' AND Action = 'DailyResetCompleted'
        ORDER BY EntityID DESC
        LIMIT :n
        """,
        {"n": max(1, sample_size)},
    )
    for row in rows:
        print(f"  - {tuple(row)}")


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Asset lifecycle DB overview")
    parser.add_argument("--db-url", default=os.environ.get("ASSET_LIFECYCLE_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    parser.add_argument("--create-missing", action="store_true", help="Create tables that do not exist yet")
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("ASSET_LIFECYCLE_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        # Force a quick connectivity check first.
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    if args.create_missing:
        created = create_missing_tables(engine)
        _print_section("Created Tables")
        print(", ".join(created) if created else "none")

    existence = _run_existence_checks(engine)
    columns = _run_column_checks(engine)
    integrity = _run_integrity_checks(engine)
    _print_results("Table Existence", existence)
    _print_results("Column Checks", columns)
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    _print_reset_markers(engine, args.samples)
    return 0 if all(row.ok for row in [*existence, *columns, *integrity]) else 1


if __name__ == "__main__":
    sys.exit(main())
