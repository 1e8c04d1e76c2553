"""
Request helpers shared by the JSON API routes.

Every route answers JSON. Failures are ``{"error": message}`` with an HTTP
status; handlers raise ApiError and the ``api_view`` decorator turns it into
a response.
"""

import json
import logging
import re
import sqlite3
from functools import wraps
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from datasette import Response
from datasette.utils.asgi import Request

from datasette_book_club.admin_auth import has_admin_accounts
from datasette_book_club.config import PLUGIN_NAME, BookClubConfig
from datasette_book_club.db import BookClubDatabase, format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

KEY_HASH_MAX_LENGTH = 256
MEETING_DATE_RE = re.compile(r"^[0-9]{4}-[0-9]{2}-[0-9]{2}$")
ID_RE = re.compile(r"[0-9]+")

VOTER_KEY_HASH_HEADER = "x-voter-key-hash"
SUGGESTER_KEY_HASH_HEADER = "x-suggester-key-hash"


class ApiError(Exception):
    """An error reported to the client as JSON."""

    def __init__(self, message: str, status: int = 400, headers: dict | None = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.headers = headers


# -----------------------------------------------------------------------------
# Plugin Configuration
# -----------------------------------------------------------------------------


def get_config(datasette) -> BookClubConfig:
    """Get plugin configuration from datasette.yaml."""
    return BookClubConfig.from_dict(datasette.plugin_config(PLUGIN_NAME) or {})


def get_db_path(datasette) -> Path:
    return get_config(datasette).db_path


def ensure_db_exists(db_path: Path) -> None:
    """Ensure the database exists with the current schema (idempotent)."""
    from datasette_book_club.migrations import run_migrations

    run_migrations(db_path, verbose=False)


def get_database(datasette) -> BookClubDatabase:
    db_path = get_db_path(datasette)
    ensure_db_exists(db_path)
    return BookClubDatabase(db_path)


# -----------------------------------------------------------------------------
# Responses
# -----------------------------------------------------------------------------


def json_response(body: Any, status: int = 200, headers: dict | None = None) -> Response:
    """JSON response; API output is kept out of search indexes."""
    return Response.json(
        body,
        status=status,
        headers={"X-Robots-Tag": "noindex, nofollow", **(headers or {})},
    )


def json_error(message: str, status: int, headers: dict | None = None) -> Response:
    return json_response({"error": message}, status=status, headers=headers)


def api_view(fn):
    """Turn ApiError into its JSON response and log unexpected database errors."""

    @wraps(fn)
    async def wrapper(request: Request, datasette):
        try:
            return await fn(request, datasette)
        except ApiError as e:
            return json_error(e.message, e.status, e.headers)
        except sqlite3.Error:
            logger.exception(f"Database error handling {request.method} {request.path}")
            return json_error("Database error", 500)

    return wrapper


# -----------------------------------------------------------------------------
# Actor Helpers
# -----------------------------------------------------------------------------


def is_admin(request: Request) -> bool:
    """Check if the current actor is a signed-in admin."""
    actor = request.actor
    return actor is not None and actor.get("principal_type") == "admin"


def admin_required(fn):
    """
    Gate a route to admins.

    With no admin account configured the gate is open, which is only
    suitable for local development; startup logs a warning in that case.
    """

    @wraps(fn)
    async def wrapper(request: Request, datasette):
        if not is_admin(request):
            db_path = get_db_path(datasette)
            ensure_db_exists(db_path)
            if has_admin_accounts(db_path):
                return json_error("Admin authentication required", 401)
        return await fn(request, datasette)

    return wrapper


# -----------------------------------------------------------------------------
# Input Parsing
# -----------------------------------------------------------------------------


def require_method(request: Request, *methods: str) -> None:
    if request.method not in methods:
        raise ApiError("Method not allowed", 405)


async def read_json_body(request: Request) -> dict:
    """Parse the request body as a JSON object (empty body -> {})."""
    body = await request.post_body()
    if not body or not body.strip():
        return {}
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ApiError("Invalid JSON body")
    if not isinstance(data, dict):
        raise ApiError("Request body must be a JSON object")
    return data


def parse_id(value: Any, message: str) -> int:
    """Parse a positive integer ID from a JSON value, query string or URL part."""
    if isinstance(value, bool):
        raise ApiError(message)
    if isinstance(value, int):
        number = value
    elif isinstance(value, str) and ID_RE.fullmatch(value.strip()):
        number = int(value.strip())
    else:
        raise ApiError(message)
    if number < 1:
        raise ApiError(message)
    return number


def clean_key_hash(value: Any) -> str | None:
    """A visitor key hash is 1-256 characters after trimming; anything else is None."""
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not value or len(value) > KEY_HASH_MAX_LENGTH:
        return None
    return value


def require_string(data: dict, key: str, max_length: int, message: str | None = None) -> str:
    """A required non-blank string field, trimmed."""
    value = data.get(key)
    if not isinstance(value, str) or not value.strip() or len(value.strip()) > max_length:
        raise ApiError(message or f"{key} is required (1-{max_length} characters)")
    return value.strip()


def optional_password(data: dict, key: str) -> str | None:
    """A password field exactly as sent; whitespace is part of the password."""
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ApiError(f"{key} must be a string")
    return value


def optional_string(data: dict, key: str, max_length: int | None = None) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ApiError(f"{key} must be a string")
    value = value.strip()
    if max_length is not None and len(value) > max_length:
        raise ApiError(f"{key} must be at most {max_length} characters")
    return value or None


def optional_url(data: dict, key: str) -> str | None:
    """An http(s) URL, or None for a missing, null or empty value."""
    value = data.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ApiError(f"{key} must be a URL")
    parsed = urlparse(value.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ApiError(f"{key} must be a URL")
    return value.strip()


def optional_bool(data: dict, key: str) -> bool | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, bool):
        raise ApiError(f"{key} must be true or false")
    return value


def parse_meeting_date(value: Any, key: str = "meetingDate") -> str:
    if not isinstance(value, str) or not MEETING_DATE_RE.match(value):
        raise ApiError(f"{key} must be YYYY-MM-DD")
    return value


def parse_optional_timestamp(data: dict, key: str) -> str | None:
    """An ISO-8601 datetime normalised to UTC, or None when absent."""
    value = data.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ApiError(f"{key} must be an ISO-8601 datetime")
    try:
        return format_timestamp(parse_timestamp(value.strip()))
    except ValueError:
        raise ApiError(f"{key} must be an ISO-8601 datetime")
