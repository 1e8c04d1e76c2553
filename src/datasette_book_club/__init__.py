"""Datasette plugin for a community book club: shortlist voting, suggestions and moderation."""

from datasette_book_club.plugin import (
    register_routes,
    skip_csrf,
    startup,
)

__all__ = [
    "register_routes",
    "skip_csrf",
    "startup",
]
