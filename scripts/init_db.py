#!/usr/bin/env python3
"""Initialize the book club database with all migrations and sync the admin account."""

import argparse
import sqlite3
from pathlib import Path

from datasette_book_club.admin_auth import sync_admin_from_env
from datasette_book_club.config import BookClubConfig
from datasette_book_club.migrations import run_migrations


def init_db(db_path: Path, sync_admin: bool = True) -> None:
    """Create or migrate the database and show its final state."""
    print(f"Initializing database: {db_path}")

    print("Running migrations...")
    applied = run_migrations(db_path, verbose=True)
    if applied:
        print(f"Applied {len(applied)} migration(s).")

    if sync_admin:
        print("Syncing admin account...")
        sync_admin_from_env(db_path, verbose=True)

    conn = sqlite3.connect(db_path)
    try:
        cursor = conn.execute(
            "SELECT version, applied_ts FROM schema_migrations ORDER BY version"
        )
        print("\nSchema versions:")
        for row in cursor:
            print(f"  v{row[0]} applied at {row[1]}")

        cursor = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
        )
        tables = [row[0] for row in cursor if not row[0].startswith("sqlite_")]
        print(f"\nTables: {', '.join(tables)}")
    finally:
        conn.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Initialize the book club database")
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Path to the SQLite database file (default: db_path from --config, else book_club.db)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("datasette.yaml"),
        help="Path to datasette.yaml (default: datasette.yaml)",
    )
    parser.add_argument(
        "--no-admin-sync",
        action="store_true",
        help="Skip syncing the admin account from ADMIN_PASSWORD",
    )
    args = parser.parse_args()

    db_path = args.db or BookClubConfig.from_yaml(args.config).db_path
    init_db(db_path, sync_admin=not args.no_admin_sync)


if __name__ == "__main__":
    main()
