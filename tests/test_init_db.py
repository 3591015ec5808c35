"""
Database bootstrap (storage/init_db.py).

Covers:
  - fresh file DB gets every table + schema_migrations
  - shipped migrations applied once, recorded by filename
  - re-running is a no-op (schema idempotent, no migration re-applied)
  - pending migrations applied in filename order
  - missing migrations dir -> nothing applied
  - run_sql_path skips missing / empty files
  - events table from before the lifecycle columns gets them added
  - ensure_folders creates only the storage + migrations folders
"""

from __future__ import annotations

import sqlite3

from storage import init_db

TABLES = {
    "events", "categories", "menu_items", "menu_item_options",
    "menu_item_images", "bundles", "bundle_lines", "guest_orders", "order_items",
    "schema_migrations",
}


def _tables(path):
    conn = sqlite3.connect(path)
    try:
        return {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    finally:
        conn.close()


def _applied(path):
    conn = sqlite3.connect(path)
    try:
        return [r[0] for r in conn.execute("SELECT filename FROM schema_migrations ORDER BY filename")]
    finally:
        conn.close()


class TestInitDb:

    def test_fresh_db(self, tmp_path):
        db = tmp_path / "fresh.db"
        applied = init_db.init_db(db)
        assert TABLES <= _tables(db)
        assert "001_items_code_index.sql" in applied
        assert _applied(db) == applied

    def test_rerun_is_noop(self, tmp_path):
        db = tmp_path / "again.db"
        init_db.init_db(db)
        assert init_db.init_db(db) == []

    def test_custom_migrations_in_order(self, tmp_path):
        mig = tmp_path / "migrations"
        mig.mkdir()
        (mig / "002_second.sql").write_text(
            "ALTER TABLE events ADD COLUMN venue TEXT;", encoding="utf-8")
        (mig / "001_first.sql").write_text(
            "CREATE TABLE IF NOT EXISTS notes (id INTEGER PRIMARY KEY);", encoding="utf-8")
        db = tmp_path / "custom.db"

        assert init_db.init_db(db, migrations_dir=mig) == ["001_first.sql", "002_second.sql"]
        conn = sqlite3.connect(db)
        try:
            cols = {r[1] for r in conn.execute("PRAGMA table_info(events)")}
        finally:
            conn.close()
        assert "venue" in cols
        assert "notes" in _tables(db)

        (mig / "003_third.sql").write_text(
            "CREATE INDEX IF NOT EXISTS idx_events_venue ON events(venue);", encoding="utf-8")
        assert init_db.init_db(db, migrations_dir=mig) == ["003_third.sql"]

    def test_missing_migrations_dir(self, tmp_path):
        db = tmp_path / "nomig.db"
        assert init_db.init_db(db, migrations_dir=tmp_path / "does-not-exist") == []
        assert "events" in _tables(db)

    def test_run_sql_path_skips(self, tmp_path):
        empty = tmp_path / "empty.sql"
        empty.write_text("   \n", encoding="utf-8")
        conn = sqlite3.connect(":memory:")
        try:
            assert init_db.run_sql_path(conn, tmp_path / "missing.sql") is False
            assert init_db.run_sql_path(conn, empty) is False
        finally:
            conn.close()

    def test_old_events_table_gets_new_columns(self, tmp_path):
        db = tmp_path / "old.db"
        conn = sqlite3.connect(db)
        try:
            conn.executescript("""
                CREATE TABLE events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT, owner TEXT NOT NULL,
                  slug TEXT NOT NULL UNIQUE, title TEXT NOT NULL, restaurant_name TEXT,
                  menu_json TEXT, created_at TEXT NOT NULL, updated_at TEXT NOT NULL
                );
                INSERT INTO events (owner, slug, title, created_at, updated_at)
                VALUES ('alice', 'party-1', 'Party', '2026-01-01', '2026-01-01');
            """)
            conn.commit()
        finally:
            conn.close()

        init_db.init_db(db)
        conn = sqlite3.connect(db)
        try:
            cols = {r[1] for r in conn.execute("PRAGMA table_info(events)")}
            row = conn.execute("SELECT status, spice_scale, show_prices FROM events").fetchone()
        finally:
            conn.close()
        assert {"status", "spice_scale", "vip_message", "pdf_section_title"} <= cols
        assert row == ("DRAFT", "GERMAN", 1)

    def test_ensure_folders(self, tmp_path, monkeypatch):
        monkeypatch.setattr(init_db, "STORAGE", tmp_path / "storage")
        monkeypatch.setattr(init_db, "MIGRATIONS_DIR", tmp_path / "storage" / "migrations")
        init_db.ensure_folders()
        assert sorted(p.relative_to(tmp_path).as_posix() for p in tmp_path.rglob("*")) == [
            "storage", "storage/migrations",
        ]
