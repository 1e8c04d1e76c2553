"""
Home status: is voting open, are suggestions open, and the current book.

The response may be cached, but never past the moment an open round
closes, so a cached "open" cannot outlive the round.
"""

import logging
import sqlite3

from datasette import Response
from datasette.utils.asgi import Request

from datasette_book_club.db import parse_timestamp, utc_now
from datasette_book_club.moderation import clean_blurb
from datasette_book_club.web import get_config, get_database, json_response

logger = logging.getLogger(__name__)


def cache_control(max_age: int) -> str:
    if max_age > 0:
        return f"public, max-age={max_age}, s-maxage={max_age}"
    return "public, max-age=0, must-revalidate"


def seconds_until_first_close(close_times: list[str | None], now, cap: int) -> int:
    """Seconds until the earliest of the given close times, capped and floored at 0."""
    max_age = cap
    for close_at in close_times:
        closes = parse_timestamp(close_at)
        if closes is None:
            continue
        max_age = min(max_age, int((closes - now).total_seconds()))
    return max(0, max_age)


async def status(request: Request, datasette) -> Response:
    config = get_config(datasette)
    now = utc_now()

    try:
        db = get_database(datasette)

        vote_round = db.get_latest_vote_round()
        vote_open = vote_round is not None and vote_round.is_open(now)

        suggestion_round = db.get_current_suggestion_round(now)
        current_book = db.get_current_book_of_the_month()
    except sqlite3.Error:
        logger.exception("Failed to load home status")
        return json_response(
            {"error": "Failed to load status"},
            status=500,
            headers={"Cache-Control": "no-store"},
        )

    open_close_times = []
    if vote_open:
        open_close_times.append(vote_round.close_vote_at)
    if suggestion_round is not None:
        open_close_times.append(suggestion_round.close_at)
    max_age = seconds_until_first_close(open_close_times, now, config.status_max_cache_seconds)

    body = {
        "voteOpen": vote_open,
        "voteRoundId": vote_round.id if vote_round else None,
        "voteCloseAt": vote_round.close_vote_at if vote_round else None,
        "suggestionsOpen": suggestion_round is not None,
        "suggestionRoundId": suggestion_round.id if suggestion_round else None,
        "suggestionsCloseAt": suggestion_round.close_at if suggestion_round else None,
        "currentBook": (
            {
                "title": current_book.title,
                "author": current_book.author,
                "meetingDate": current_book.meeting_date,
                "coverUrl": current_book.cover_url,
                "blurb": clean_blurb(current_book.blurb),
            }
            if current_book
            else None
        ),
    }
    return json_response(body, headers={"Cache-Control": cache_control(max_age)})
