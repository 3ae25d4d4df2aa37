"""Populate the locations table with pickup/drop-off airports and cities.

The CSV needs the columns ``kind`` (airport or city), ``name`` and
``delivery_fee``; ``code`` is optional and used for airports:

    python import_locations.py locations.csv
"""

from __future__ import annotations

import argparse
import csv
import io
import os
import sqlite3
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Iterable, List, Tuple

from reservations import ensure_schema

APP_ROOT = Path(__file__).resolve().parent
DATA_ROOT = Path(os.environ.get("CARRENTAL_DATA_DIR") or APP_ROOT.joinpath("data"))
DB_PATH = Path(os.environ.get("CARRENTAL_DB_PATH") or DATA_ROOT.joinpath("car_rental.db"))

LocationRow = Tuple[str, str, str, str]


def transform_rows(raw_csv: str) -> Iterable[LocationRow]:
    reader = csv.DictReader(io.StringIO(raw_csv))
    for row in reader:
        kind = (row.get("kind") or "").strip().lower()
        if kind not in ("airport", "city"):
            continue
        name = (row.get("name") or "").strip()
        if not name:
            continue
        try:
            fee = Decimal((row.get("delivery_fee") or "0").strip() or "0")
        except InvalidOperation:
            continue
        if not fee.is_finite() or fee < 0:
            continue
        code = (row.get("code") or "").strip().upper()
        yield kind, code, name, str(fee.quantize(Decimal("0.01")))


def import_rows(conn: sqlite3.Connection, rows: List[LocationRow]) -> int:
    ensure_schema(conn)
    with conn:
        conn.executemany(
            """
            INSERT INTO locations (kind, code, name, delivery_fee)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(kind, name)
            DO UPDATE SET code = excluded.code, delivery_fee = excluded.delivery_fee
            """,
            rows,
        )
    return len(rows)


def main(argv: List[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Import pickup/drop-off locations")
    parser.add_argument("csv_path", type=Path)
    parser.add_argument("--db", type=Path, default=DB_PATH)
    args = parser.parse_args(argv)

    try:
        raw_csv = args.csv_path.read_text(encoding="utf-8")
    except OSError as exc:
        print(f"Could not read {args.csv_path}: {exc}", file=sys.stderr)
        sys.exit(1)

    rows = list(transform_rows(raw_csv))
    if not rows:
        print("No valid locations were found in the file!", file=sys.stderr)
        sys.exit(1)

    args.db.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(args.db)
    try:
        count = import_rows(conn, rows)
    finally:
        conn.close()

    print(f"Imported {count} locations into {args.db.name}.")


if __name__ == "__main__":
    main()
