# storage/db.py
from __future__ import annotations

import os
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Dict

# ------------------------------------------------------------
# Paths / DB
# ------------------------------------------------------------
ROOT = Path(__file__).resolve().parents[1]   # project root
SCHEMA_PATH = ROOT / "storage" / "schema.sql"
DB_PATH = Path(os.getenv("PARTYMENU_DB") or (ROOT / "storage" / "partymenu.db"))


def db_connect() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%d %H:%M:%S")


def _row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    return {k: row[k] for k in row.keys()}


# ------------------------------------------------------------
# Schema (idempotent; safe to call repeatedly)
# ------------------------------------------------------------
# events columns that postdate the first schema; ALTERed into older DBs
_EVENT_COLUMNS = (
    ("status", "TEXT NOT NULL DEFAULT 'DRAFT'"),
    ("show_prices", "INTEGER NOT NULL DEFAULT 1"),
    ("spice_scale", "TEXT NOT NULL DEFAULT 'GERMAN'"),
    ("pdf_header_title", "TEXT NOT NULL DEFAULT 'New Party Order'"),
    ("pdf_report_title", "TEXT NOT NULL DEFAULT 'MASTER ORDER SUMMARY'"),
    ("pdf_restaurant_label", "TEXT NOT NULL DEFAULT 'Restaurant'"),
    ("pdf_section_title", "TEXT NOT NULL DEFAULT 'DETAILED ORDERS'"),
    ("pdf_address", "TEXT"),
    ("vip_name", "TEXT"),
    ("vip_message", "TEXT"),
)


def _col_exists(conn: sqlite3.Connection, table: str, col: str) -> bool:
    return any(
        r[1].lower() == col
        for r in conn.execute(f"PRAGMA table_info({table});").fetchall()
    )


def ensure_event_columns(conn: sqlite3.Connection) -> None:
    for col, ddl in _EVENT_COLUMNS:
        if not _col_exists(conn, "events", col):
            conn.execute(f"ALTER TABLE events ADD COLUMN {col} {ddl};")


def apply_schema(conn: sqlite3.Connection) -> None:
    """Run storage/schema.sql against an open connection."""
    with SCHEMA_PATH.open("r", encoding="utf-8") as f:
        conn.executescript(f.read())
    ensure_event_columns(conn)


def _ensure_schema() -> None:
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    with db_connect() as conn:
        apply_schema(conn)
        conn.commit()


_ensure_schema()
