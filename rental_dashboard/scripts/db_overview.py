#!/usr/bin/env python3
"""Database overview and integrity checks for the rental dashboard."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, func, inspect, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rental_dashboard.db.base import Base
from rental_dashboard.models.rental_models import Asset, AuditLog, Order, OrderItem, Product
from rental_dashboard.services.availability_service import peak_commitment
from rental_dashboard.services.order_state_service import STATUS_ALIASES, OrderStatus


EXPECTED_TABLES = [table.name for table in Base.metadata.sorted_tables]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    table.name: [column.name for column in table.columns] for table in Base.metadata.sorted_tables
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


def _table_exists(engine: Engine, table_name: str) -> bool:
    return inspect(engine).has_table(table_name)


def _column_names(engine: Engine, table_name: str) -> set[str]:
    return {str(column["name"]) for column in inspect(engine).get_columns(table_name)}


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


def _count_check(engine: Engine, name: str, stmt) -> CheckResult:
    with engine.connect() as conn:
        count = int(conn.execute(stmt).scalar() or 0)
    return CheckResult(name, count == 0, f"count={count}")


def _run_integrity_checks(engine: Engine) -> list[CheckResult]:
    checks: list[CheckResult] = []

    if _table_exists(engine, "orders"):
        checks.append(
            _count_check(
                engine,
                "orders:end_before_start",
                select(func.count(Order.OrderID)).where(Order.EndDate < Order.StartDate),
            )
        )
        known = [status.value for status in OrderStatus] + list(STATUS_ALIASES)
        checks.append(
            _count_check(
                engine,
                "orders:unknown_status",
                select(func.count(Order.OrderID)).where(Order.Status.not_in(known)),
            )
        )

    if _table_exists(engine, "order_items"):
        checks.append(
            _count_check(
                engine,
                "order_items:non_positive_quantity",
                select(func.count(OrderItem.OrderItemID)).where(OrderItem.Quantity < 1),
            )
        )
        checks.append(
            _count_check(
                engine,
                "order_items:orphan_productid",
                select(func.count(OrderItem.OrderItemID))
                .outerjoin(Product, Product.ProductID == OrderItem.ProductID)
                .where(Product.ProductID.is_(None)),
            )
        )

    if _table_exists(engine, "assets"):
        duplicates = (
            select(Asset.ProductID, Asset.SerialNumber)
            .group_by(Asset.ProductID, Asset.SerialNumber)
            .having(func.count() > 1)
            .subquery()
        )
        checks.append(_count_check(engine, "assets:duplicate_serial", select(func.count()).select_from(duplicates)))

    if _table_exists(engine, "products") and _table_exists(engine, "orders") and _table_exists(engine, "order_items"):
        with Session(engine) as db:
            for product in db.execute(select(Product).order_by(Product.ProductID)).scalars().all():
                peak = peak_commitment(db, product.ProductID)
                total = int(product.TotalQuantity or 0)
                checks.append(
                    CheckResult(
                        f"products:overbooked:{product.ProductID}",
                        peak <= total,
                        f"peak={peak} total={total}",
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
        with engine.connect() as conn:
            count = conn.execute(select(func.count()).select_from(Base.metadata.tables[table])).scalar()
        print(f"{table}: {int(count or 0)}")


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)

    with engine.connect() as conn:
        if _table_exists(engine, "orders"):
            rows = conn.execute(
                select(Order.OrderID, Order.OrderNumber, Order.Status, Order.StartDate, Order.EndDate, Order.TotalAmount)
                .order_by(Order.OrderID.desc())
                .limit(sample_size)
            ).all()
            print("orders (recent):")
            for row in rows:
                print(f"  - {tuple(row)}")

        if _table_exists(engine, "audit_logs"):
            rows = conn.execute(
                select(AuditLog.AuditID, AuditLog.EntityType, AuditLog.Action, AuditLog.UserID, AuditLog.CreatedAt)
                .order_by(AuditLog.AuditID.desc())
                .limit(sample_size)
            ).all()
            print("audit_logs (recent):")
            for row in rows:
                print(f"  - {tuple(row)}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Rental dashboard DB overview")
    parser.add_argument("--db-url", default=os.environ.get("RENTAL_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    parser.add_argument("--create-tables", action="store_true", help="Create missing tables before checking.")
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("RENTAL_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except SQLAlchemyError as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    if args.create_tables:
        Base.metadata.create_all(engine)
        print("Tables created (existing tables are left untouched).")

    _print_results("Table Existence", _run_existence_checks(engine))
    _print_results("Column Checks", _run_column_checks(engine))
    _print_results("Integrity Checks", _run_integrity_checks(engine))
    _print_row_counts(engine)
    _print_samples(engine, args.samples)
    return 0


if __name__ == "__main__":
    sys.exit(main())
