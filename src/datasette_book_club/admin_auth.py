"""
Admin authentication utilities for datasette-book-club.

Uses PBKDF2-SHA256 hashing (same as datasette-auth-passwords) for admin
passwords and for the optional per-round access passwords. The admin account
is synced from environment variables on startup.
"""

import hashlib
import logging
import os
import secrets
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)

# PBKDF2 parameters (matching datasette-auth-passwords defaults)
HASH_ALGORITHM = "sha256"
HASH_ITERATIONS = 260000
HASH_SALT_LENGTH = 16
HASH_KEY_LENGTH = 32

DEFAULT_ADMIN_USERNAME = "admin"


def hash_password(password: str) -> str:
    """
    Hash a password using PBKDF2-SHA256.

    Returns a string in the format: pbkdf2_sha256$iterations$salt$hash
    This format is compatible with datasette-auth-passwords.
    """
    salt = secrets.token_hex(HASH_SALT_LENGTH)
    key = hashlib.pbkdf2_hmac(
        HASH_ALGORITHM,
        password.encode("utf-8"),
        salt.encode("utf-8"),
        HASH_ITERATIONS,
        dklen=HASH_KEY_LENGTH,
    )
    return f"pbkdf2_{HASH_ALGORITHM}${HASH_ITERATIONS}${salt}${key.hex()}"


def verify_password(password: str, password_hash: str | None) -> bool:
    """
    Verify a password against a stored hash.

    Returns True if the password matches, False otherwise (including for a
    missing or malformed hash).
    """
    if not password_hash:
        return False
    try:
        parts = password_hash.split("$")
        if len(parts) != 4:
            return False

        algorithm_part, iterations_str, salt, stored_hash = parts
        if not algorithm_part.startswith("pbkdf2_"):
            return False

        key = hashlib.pbkdf2_hmac(
            algorithm_part[len("pbkdf2_"):],
            password.encode("utf-8"),
            salt.encode("utf-8"),
            int(iterations_str),
            dklen=len(bytes.fromhex(stored_hash)),
        )
        return secrets.compare_digest(key.hex(), stored_hash)

    except (ValueError, AttributeError):
        return False


def get_admin_account(db_path: Path, username: str) -> dict | None:
    """
    Get an admin account by username.

    Returns dict with username, password_hash, display_name or None if not found.
    """
    if not db_path.exists():
        return None

    conn = sqlite3.connect(db_path)
    try:
        row = conn.execute(
            "SELECT username, password_hash, display_name FROM admin_accounts WHERE username = ?",
            (username,),
        ).fetchone()
        if row:
            return {
                "username": row[0],
                "password_hash": row[1],
                "display_name": row[2],
            }
        return None
    finally:
        conn.close()


def has_admin_accounts(db_path: Path) -> bool:
    """True when at least one admin account exists (admin routes are gated)."""
    if not db_path.exists():
        return False

    conn = sqlite3.connect(db_path)
    try:
        row = conn.execute("SELECT 1 FROM admin_accounts LIMIT 1").fetchone()
        return row is not None
    except sqlite3.OperationalError:
        # Schema not migrated yet
        return False
    finally:
        conn.close()


def upsert_admin_account(
    db_path: Path,
    username: str,
    password_hash: str,
    display_name: str | None = None,
) -> None:
    """
    Create or update an admin account.

    If the account exists, updates the password_hash and display_name.
    """
    now = datetime.now(UTC).isoformat()
    conn = sqlite3.connect(db_path)
    try:
        conn.execute(
            """
            INSERT INTO admin_accounts (username, password_hash, display_name, created_ts)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(username) DO UPDATE SET
                password_hash = excluded.password_hash,
                display_name = excluded.display_name,
                updated_ts = ?
            """,
            (username, password_hash, display_name, now, now),
        )
        conn.commit()
    finally:
        conn.close()


def sync_admin_from_env(db_path: Path, verbose: bool = False) -> bool:
    """
    Sync the admin account from environment variables.

    Reads ADMIN_USERNAME (default: "admin"), ADMIN_PASSWORD and
    ADMIN_DISPLAY_NAME. If ADMIN_PASSWORD is set, hashes it and upserts the
    account.

    Returns True if an account was synced, False otherwise.
    """
    username = os.environ.get("ADMIN_USERNAME") or DEFAULT_ADMIN_USERNAME
    password = os.environ.get("ADMIN_PASSWORD")
    display_name = os.environ.get("ADMIN_DISPLAY_NAME", "Administrator")

    if not password:
        if verbose:
            print("  ADMIN_PASSWORD not set, skipping admin account sync")
        return False

    upsert_admin_account(db_path, username, hash_password(password), display_name)
    logger.info(f"Synced admin account: {username}")

    if verbose:
        print(f"  Synced admin account: {username}")

    return True


def authenticate_admin(db_path: Path, username: str, password: str) -> dict | None:
    """
    Authenticate an admin with username and password.

    Returns the admin account dict on success, None on failure.
    """
    account = get_admin_account(db_path, username)
    if account is None:
        return None

    if verify_password(password, account["password_hash"]):
        return account

    return None
