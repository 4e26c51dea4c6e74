"""
Migration: identity linkage columns on users
- Renames legacy 'password' column to 'password_hash'
- Adds provider linkage, identity status and password reset columns if missing
- Backfills identity_status ('linked' when a provider UID is present)
- Drops the retired account lockout columns

Usage:
  python -m migration.migration_identity_columns --db path/to/peaberry.db
"""
import argparse
import os
import sqlite3
from contextlib import closing

NEW_COLUMNS = (
    ("provider_id", "TEXT"),
    ("provider_uid", "TEXT"),
    ("photo_url", "TEXT"),
    ("identity_status", "TEXT NOT NULL DEFAULT 'local_only'"),
    ("orphaned_at", "DATETIME"),
    ("password_reset_token", "TEXT"),
    ("password_reset_token_expires_at", "DATETIME"),
)

LOCKOUT_COLUMNS = ("failed_login_attempts", "account_locked", "account_locked_at", "lockout_expires_at")


def columns(conn: sqlite3.Connection, table: str) -> set:
    cur = conn.execute(f"PRAGMA table_info({table})")
    return {row[1] for row in cur.fetchall()}


def migrate(db_path: str):
    if db_path == ":memory:":
        raise ValueError("Use a file-backed DB for migration script")

    if not os.path.exists(db_path):
        raise FileNotFoundError(db_path)

    with closing(sqlite3.connect(db_path)) as conn:
        conn.execute("PRAGMA foreign_keys=ON")

        tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        if "users" not in tables:
            raise RuntimeError("users table missing; cannot migrate")

        existing = columns(conn, "users")
        if "password" in existing and "password_hash" not in existing:
            conn.execute("ALTER TABLE users RENAME COLUMN password TO password_hash")

        for name, ddl in NEW_COLUMNS:
            if name not in existing:
                conn.execute(f"ALTER TABLE users ADD COLUMN {name} {ddl}")

        conn.execute(
            "UPDATE users SET identity_status = 'linked' "
            "WHERE provider_uid IS NOT NULL AND identity_status = 'local_only'"
        )

        for name in LOCKOUT_COLUMNS:
            if name in existing:
                conn.execute(f"ALTER TABLE users DROP COLUMN {name}")
        conn.commit()


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", required=True, help="Path to SQLite database file")
    args = parser.parse_args()
    migrate(args.db)


if __name__ == "__main__":
    main()
