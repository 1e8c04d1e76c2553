#!/usr/bin/env python3
"""
Delete every vote round and suggestion round, with their votes,
shortlists and suggestions, and restart their IDs.

Book of the month history and admin accounts are kept.

Usage:
    python scripts/clear_db.py --yes
    python scripts/clear_db.py --db book_club.db --yes
"""

import argparse
import sys
from pathlib import Path

from datasette_book_club.config import BookClubConfig
from datasette_book_club.db import ROUND_TABLES, BookClubDatabase


def main() -> int:
    parser = argparse.ArgumentParser(description="Clear all book club rounds")
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Path to the SQLite database file (default: db_path from --config)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("datasette.yaml"),
        help="Path to datasette.yaml (default: datasette.yaml)",
    )
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Confirm deletion (required)",
    )
    args = parser.parse_args()

    db_path = args.db or BookClubConfig.from_yaml(args.config).db_path
    if not db_path.exists():
        print(f"Database not found: {db_path}", file=sys.stderr)
        return 1

    if not args.yes:
        print(f"This deletes all rows from {', '.join(ROUND_TABLES)} in {db_path}.")
        print("Re-run with --yes to confirm.")
        return 1

    print(f"Clearing rounds in {db_path}...")
    deleted = BookClubDatabase(db_path).clear_rounds()
    for table, count in deleted.items():
        print(f"  {table}: {count} row(s) deleted")
    print("Done.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
