"""Shared pytest fixtures for book club tests."""

from datetime import timedelta

import pytest
from datasette.app import Datasette

from datasette_book_club.access import round_password_hash
from datasette_book_club.admin_auth import hash_password, upsert_admin_account
from datasette_book_club.db import BookClubDatabase, utc_now
from datasette_book_club.migrations import run_migrations

ADMIN_PASSWORD = "adminpass"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep deployment credentials in the environment out of tests."""
    for name in (
        "ADMIN_USERNAME",
        "ADMIN_PASSWORD",
        "ADMIN_DISPLAY_NAME",
        "EVENTBRITE_PRIVATE_TOKEN",
        "EVENTBRITE_ORGANIZATION_ID",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def db_path(tmp_path):
    """Create a temporary database with full schema via migrations.

    This is the canonical way to get a test database - uses the same
    migration system as production.
    """
    db_file = tmp_path / "test_book_club.db"
    run_migrations(db_file, verbose=False)
    return db_file


@pytest.fixture
def db(db_path):
    return BookClubDatabase(db_path)


@pytest.fixture
def datasette(db_path):
    """Create a Datasette instance with the plugin configured.

    Uses config= (not metadata=) for Datasette v1 compatibility.
    """
    return Datasette(
        [str(db_path)],
        config={
            "plugins": {
                "datasette-book-club": {
                    "db_path": str(db_path),
                }
            },
        },
    )


@pytest.fixture
def admin_account(db_path):
    """An admin account exists, so admin routes are gated."""
    upsert_admin_account(db_path, "admin", hash_password(ADMIN_PASSWORD), "Club Admin")
    return "admin"


@pytest.fixture
def admin_cookies(datasette, admin_account):
    """Signed ds_actor cookie for a logged-in admin."""
    actor = {"id": "admin:admin", "principal_type": "admin", "principal_id": "admin"}
    return {"ds_actor": datasette.sign({"a": actor}, "actor")}


@pytest.fixture
def future():
    """An ISO timestamp a day from now."""
    return (utc_now() + timedelta(days=1)).isoformat()


@pytest.fixture
def past():
    """An ISO timestamp a day ago."""
    return (utc_now() - timedelta(days=1)).isoformat()


@pytest.fixture
def make_vote_round(db):
    """Factory for vote rounds with a shortlist of titled books."""

    def _make(
        meeting_date="2025-03-05",
        book_ids=("OL1W", "OL2W", "OL3W"),
        close_vote_at=None,
        password=None,
    ):
        books = [
            {"external_id": book_id, "title": f"Title {book_id}", "author": f"Author {book_id}"}
            for book_id in book_ids
        ]
        return db.create_vote_round(
            meeting_date,
            books,
            close_vote_at=close_vote_at,
            access_password_hash=round_password_hash(password),
        )

    return _make


@pytest.fixture
def make_suggestion_round(db):
    """Factory for suggestion rounds."""

    def _make(close_at=None, password=None, label=None, suggestions_for_date="2025-04-02"):
        return db.create_suggestion_round(
            suggestions_for_date=suggestions_for_date,
            label=label,
            close_at=close_at,
            access_password_hash=round_password_hash(password),
        )

    return _make
