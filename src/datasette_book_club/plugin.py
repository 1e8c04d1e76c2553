"""
Datasette plugin for a community book club.

Members vote on a shortlist of 2-4 books and suggest books for future
rounds; admins configure rounds, moderate suggestions and record the book
of the month. Everything is served as JSON under /api/.
"""

import logging

from datasette import hookimpl

from datasette_book_club import admin, status, suggestions, voting
from datasette_book_club.admin_auth import has_admin_accounts, sync_admin_from_env
from datasette_book_club.web import ensure_db_exists, get_db_path

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Datasette Hooks
# -----------------------------------------------------------------------------


@hookimpl
def register_routes():
    """Register plugin routes with Datasette."""
    return [
        # Public: voting
        (r"^/api/votes$", voting.votes),
        (r"^/api/votes/verify-password$", voting.verify_vote_password),
        (r"^/api/rounds$", voting.list_rounds),
        (r"^/api/nextbook$", voting.next_book),
        # Public: suggestions
        (r"^/api/suggestion-rounds$", suggestions.suggestion_rounds),
        (r"^/api/suggestions$", suggestions.suggestions),
        (r"^/api/suggestions/verify-password$", suggestions.verify_suggestion_password),
        # Public: home status
        (r"^/api/status$", status.status),
        # Admin session
        (r"^/api/admin/login$", admin.admin_login),
        (r"^/api/admin/logout$", admin.admin_logout),
        # Admin: rounds
        (r"^/api/admin/vote-rounds$", admin.create_vote_round),
        (r"^/api/admin/vote-rounds/(?P<round_id>[^/]+)/close$", admin.close_vote_round),
        (r"^/api/admin/vote-rounds/(?P<round_id>[^/]+)/winner$", admin.set_vote_winner),
        (
            r"^/api/admin/suggestion-rounds/(?P<round_id>[^/]+)/close$",
            admin.close_suggestion_round,
        ),
        # Admin: results
        (r"^/api/admin/vote-results$", admin.admin_vote_results),
        (r"^/api/admin/latest-vote-books$", admin.latest_vote_books),
        (r"^/api/admin/suggestion-results$", admin.admin_suggestion_results),
        (r"^/api/admin/latest-suggestion-top-books$", admin.latest_suggestion_top_books),
        # Admin: moderation, book of the month, events
        (r"^/api/admin/suggestions/(?P<suggestion_id>[^/]+)$", admin.admin_suggestion),
        (r"^/api/admin/book-of-the-month$", admin.book_of_the_month),
        (r"^/api/admin/eventbrite-events$", admin.create_eventbrite_event),
    ]


@hookimpl
def skip_csrf(datasette, scope):
    """
    Skip CSRF for the JSON API.

    Clients call /api/ with fetch() and JSON bodies and never load a form to
    get a token from; admin routes are protected by the admin check and
    round writes by the round rules.
    """
    if scope.get("path", "").startswith("/api/"):
        return True
    return None


@hookimpl
def startup(datasette):
    """
    Run on Datasette startup.

    Applies pending migrations and syncs the admin account from environment
    variables if configured.
    """
    db_path = get_db_path(datasette)
    ensure_db_exists(db_path)
    sync_admin_from_env(db_path)

    if not has_admin_accounts(db_path):
        logger.warning(
            "No admin account configured (set ADMIN_PASSWORD); "
            "book club admin routes are open to everyone"
        )
