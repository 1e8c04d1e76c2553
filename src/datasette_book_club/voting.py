"""
Public voting routes: read the current round, cast a vote, unlock a
password-gated round, list rounds and show the book of the month.
"""

import logging

from datasette import Response
from datasette.utils.asgi import Request

from datasette_book_club.access import (
    VOTE_ACCESS,
    check_round_password,
    round_access_granted,
    set_access_cookie,
)
from datasette_book_club.db import AlreadyVoted, BookClubDatabase, VoteRound, VoteRoundBook, utc_now
from datasette_book_club.rate_limit import get_client_ip, get_rate_limiter
from datasette_book_club.web import (
    KEY_HASH_MAX_LENGTH,
    VOTER_KEY_HASH_HEADER,
    ApiError,
    api_view,
    clean_key_hash,
    get_config,
    get_database,
    json_response,
    parse_id,
    read_json_body,
    require_method,
)

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Serialisation
# -----------------------------------------------------------------------------


def book_to_json(book: VoteRoundBook) -> dict:
    return {
        "externalId": book.external_id,
        "title": book.title,
        "author": book.author,
        "coverUrl": book.cover_url,
        "blurb": book.blurb,
        "link": book.link,
    }


def vote_round_to_json(vote_round: VoteRound, books: list[VoteRoundBook], now=None) -> dict:
    return {
        "id": vote_round.id,
        "meetingDate": vote_round.meeting_date,
        "closeVoteAt": vote_round.close_vote_at,
        "selectedBookIds": [book.external_id for book in books],
        "winnerExternalId": vote_round.winner_external_id,
        "isOpen": vote_round.is_open(now),
        "requiresPassword": vote_round.requires_password,
        "createdAt": vote_round.created_at,
    }


def vote_results(
    books: list[VoteRoundBook], tally: dict[str, int], winner_external_id: str | None = None
) -> dict:
    """
    Per-book vote counts in shortlist order, with the leaders.

    More than one leader with at least one vote is a tie; an explicit
    winner always wins over the count.
    """
    results = [
        {
            "externalId": book.external_id,
            "title": book.title,
            "author": book.author,
            "voteCount": tally.get(book.external_id, 0),
            "isWinner": book.external_id == winner_external_id,
        }
        for book in books
    ]
    top = max((r["voteCount"] for r in results), default=0)
    leaders = [r["externalId"] for r in results if top > 0 and r["voteCount"] == top]
    return {
        "results": results,
        "totalVotes": sum(r["voteCount"] for r in results),
        "leaderExternalIds": leaders,
        "isTie": len(leaders) > 1,
    }


def resolve_vote_round(db: BookClubDatabase, round_id_param) -> VoteRound | None:
    """The requested round, or the latest by meeting date when none is given."""
    if round_id_param in (None, ""):
        return db.get_latest_vote_round()
    round_id = parse_id(round_id_param, "roundId must be a number")
    vote_round = db.get_vote_round(round_id)
    if vote_round is None:
        raise ApiError("Vote round not found", 404)
    return vote_round


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------


@api_view
async def votes(request: Request, datasette) -> Response:
    """GET: current round and shortlist. POST: cast a vote."""
    require_method(request, "GET", "POST")
    if request.method == "POST":
        return await cast_vote(request, datasette)
    return await get_votes(request, datasette)


@api_view
async def get_votes(request: Request, datasette) -> Response:
    db = get_database(datasette)
    vote_round = resolve_vote_round(db, request.args.get("roundId"))
    if vote_round is None:
        return json_response({"round": None, "books": []})

    now = utc_now()
    books = db.get_vote_round_books(vote_round.id)
    round_json = vote_round_to_json(vote_round, books, now)

    voter_key_hash = clean_key_hash(request.headers.get(VOTER_KEY_HASH_HEADER))
    round_json["hasVoted"] = bool(voter_key_hash) and db.has_voted(vote_round.id, voter_key_hash)

    allowed = round_access_granted(
        request, datasette, VOTE_ACCESS, vote_round.id, vote_round.requires_password
    )
    round_json["requiresPassword"] = vote_round.requires_password and not allowed
    if not allowed:
        # Shortlist stays hidden until the password is entered
        round_json["selectedBookIds"] = []
        return json_response({"round": round_json, "books": []})

    body = {"round": round_json, "books": [book_to_json(b) for b in books]}
    if not vote_round.is_open(now):
        body["results"] = vote_results(
            books, db.tally_votes(vote_round.id), vote_round.winner_external_id
        )
    return json_response(body)


@api_view
async def cast_vote(request: Request, datasette) -> Response:
    data = await read_json_body(request)

    chosen = data.get("chosenBookExternalId")
    if not isinstance(chosen, str) or not chosen.strip() or len(chosen) > KEY_HASH_MAX_LENGTH:
        raise ApiError("chosenBookExternalId is required")
    chosen = chosen.strip()

    voter_key_hash = clean_key_hash(data.get("voterKeyHash"))
    if voter_key_hash is None:
        raise ApiError("voterKeyHash is required")

    db = get_database(datasette)
    if data.get("voteRoundId") is not None:
        round_id = parse_id(data["voteRoundId"], "voteRoundId must be a positive integer")
        vote_round = db.get_vote_round(round_id)
        if vote_round is None:
            raise ApiError("Vote round not found", 404)
    else:
        vote_round = db.get_latest_vote_round()
        if vote_round is None:
            raise ApiError("No vote round available", 404)

    # Openness is checked against the clock on every write
    if not vote_round.is_open():
        raise ApiError("Voting has closed for this round")

    if not round_access_granted(
        request, datasette, VOTE_ACCESS, vote_round.id, vote_round.requires_password
    ):
        raise ApiError("This round requires a password", 403)

    shortlist = {book.external_id for book in db.get_vote_round_books(vote_round.id)}
    if chosen not in shortlist:
        raise ApiError("Chosen book is not in this round shortlist")

    try:
        vote = db.add_vote(vote_round.id, chosen, voter_key_hash)
    except AlreadyVoted:
        raise ApiError("You have already voted in this round", 409)

    return json_response(
        {
            "vote": {
                "id": vote.id,
                "voteRoundId": vote.vote_round_id,
                "chosenBookExternalId": vote.chosen_book_external_id,
                "createdAt": vote.created_at,
            }
        }
    )


@api_view
async def verify_vote_password(request: Request, datasette) -> Response:
    """Check a vote round's access password and grant the access cookie."""
    require_method(request, "POST")
    config = get_config(datasette)
    retry_after = get_rate_limiter(datasette).hit(
        get_client_ip(request),
        "votes-verify-password",
        config.rules.verify_password_rate_limit,
    )
    if retry_after is not None:
        raise ApiError("Too many requests", 429, {"Retry-After": str(retry_after)})

    data = await read_json_body(request)
    round_id = parse_id(data.get("roundId"), "roundId must be a positive integer")
    password = data.get("password")
    if not isinstance(password, str) or not password:
        raise ApiError("password is required")

    db = get_database(datasette)
    vote_round = db.get_vote_round(round_id)
    if vote_round is None:
        raise ApiError("Vote round not found", 404)
    if not vote_round.requires_password:
        raise ApiError("This round has no access password")
    if not vote_round.is_open():
        raise ApiError("Voting has closed for this round")
    if not check_round_password(password, vote_round.access_password_hash):
        logger.info(f"Incorrect vote password for round {round_id}")
        raise ApiError("Incorrect password", 401)

    response = json_response({"ok": True})
    set_access_cookie(response, datasette, VOTE_ACCESS, vote_round.id)
    return response


@api_view
async def list_rounds(request: Request, datasette) -> Response:
    """All vote rounds, latest meeting date first."""
    db = get_database(datasette)
    now = utc_now()
    rounds = []
    for vote_round in db.list_vote_rounds():
        rounds.append(
            {
                "id": vote_round.id,
                "meetingDate": vote_round.meeting_date,
                "closeVoteAt": vote_round.close_vote_at,
                "winnerExternalId": vote_round.winner_external_id,
                "isOpen": vote_round.is_open(now),
                "requiresPassword": vote_round.requires_password,
            }
        )
    return json_response({"rounds": rounds})


@api_view
async def next_book(request: Request, datasette) -> Response:
    """The current book of the month."""
    db = get_database(datasette)
    book = db.get_current_book_of_the_month()
    if book is None:
        return json_response({"book": None, "meetingDate": None})
    return json_response(
        {
            "book": {
                "externalId": book.external_id,
                "title": book.title,
                "author": book.author,
                "coverUrl": book.cover_url,
                "blurb": book.blurb,
                "link": book.link,
            },
            "meetingDate": book.meeting_date,
        }
    )
