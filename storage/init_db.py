# storage/init_db.py
"""
Create or upgrade the partymenu SQLite database.

    python -m storage.init_db

Applies storage/schema.sql (idempotent), then any storage/migrations/*.sql
not yet recorded in schema_migrations, in filename order.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import List, Optional, Set

from .db import DB_PATH, ROOT, SCHEMA_PATH, ensure_event_columns

log = logging.getLogger(__name__)

# --- Paths ---
STORAGE = ROOT / "storage"
MIGRATIONS_DIR = STORAGE / "migrations"


# ----------------------------
# Utilities
# ----------------------------

def connect_db(path: Optional[Path] = None) -> sqlite3.Connection:
    """Open a SQLite connection with foreign keys enforced."""
    conn = sqlite3.connect(path or DB_PATH)
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def run_sql_path(conn: sqlite3.Connection, path: Path) -> bool:
    """Execute a whole .sql file. Returns False when it is missing or empty."""
    if not path.exists():
        log.warning("Skipping missing SQL file: %s", path)
        return False
    sql = path.read_text(encoding="utf-8")
    if not sql.strip():
        log.warning("Empty SQL file: %s", path)
        return False
    conn.executescript(sql)
    return True


def ensure_folders() -> None:
    """Create required folders (safe if they already exist)."""
    STORAGE.mkdir(parents=True, exist_ok=True)
    MIGRATIONS_DIR.mkdir(parents=True, exist_ok=True)


# ----------------------------
# Migration runner
# ----------------------------

def ensure_migrations_table(conn: sqlite3.Connection) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
          filename   TEXT PRIMARY KEY,
          applied_at TEXT NOT NULL DEFAULT (datetime('now'))
        );
    """)


def list_migration_files(directory: Optional[Path] = None) -> List[Path]:
    d = directory or MIGRATIONS_DIR
    if not d.exists():
        return []
    return sorted(d.glob("*.sql"))


def get_applied_migrations(conn: sqlite3.Connection) -> Set[str]:
    ensure_migrations_table(conn)
    return {row[0] for row in conn.execute("SELECT filename FROM schema_migrations")}


def run_pending_migrations(conn: sqlite3.Connection, directory: Optional[Path] = None) -> List[str]:
    """Apply unapplied migrations; returns the filenames applied this run."""
    applied = get_applied_migrations(conn)
    pending = [p for p in list_migration_files(directory) if p.name not in applied]
    for path in pending:
        log.info("Applying migration: %s", path.name)
        run_sql_path(conn, path)
        conn.execute("INSERT OR IGNORE INTO schema_migrations(filename) VALUES (?)", (path.name,))
    if pending:
        log.info("Applied %d migration(s).", len(pending))
    else:
        log.info("No pending migrations.")
    return [p.name for p in pending]


# ----------------------------
# Build / Migrate
# ----------------------------

def init_db(path: Optional[Path] = None, *, migrations_dir: Optional[Path] = None) -> List[str]:
    """Schema first (handles fresh and partial DBs alike), then migrations."""
    conn = connect_db(path)
    try:
        run_sql_path(conn, SCHEMA_PATH)
        ensure_event_columns(conn)
        applied = run_pending_migrations(conn, migrations_dir)
        conn.commit()
    finally:
        conn.close()
    return applied


# ----------------------------
# CLI entry
# ----------------------------

def main() -> None:
    logging.basicConfig(level=logging.INFO, format="[partymenu] %(message)s")
    ensure_folders()
    fresh = not DB_PATH.exists()
    log.info("%s DB: %s", "Creating" if fresh else "Migrating existing", DB_PATH)
    init_db()
    log.info("DB ready at %s", DB_PATH)
    log.info("Migrations dir: %s", MIGRATIONS_DIR)


if __name__ == "__main__":
    main()
