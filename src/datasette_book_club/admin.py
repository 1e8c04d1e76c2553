"""
Admin routes: session, round management, results, moderation, book of the
month and Eventbrite publishing.

Everything except login/logout sits behind ``admin_required``.
"""

import logging

from datasette import Response
from datasette.utils.asgi import Request

from datasette_book_club.access import round_password_hash
from datasette_book_club.admin_auth import (
    DEFAULT_ADMIN_USERNAME,
    authenticate_admin,
    has_admin_accounts,
)
from datasette_book_club.db import DuplicateMeetingDate, Suggestion, utc_now
from datasette_book_club.eventbrite import EventbriteClient, EventbriteError, EventDetails
from datasette_book_club.moderation import clean_blurb
from datasette_book_club.rate_limit import get_client_ip, get_rate_limiter
from datasette_book_club.voting import book_to_json, vote_results, vote_round_to_json
from datasette_book_club.web import (
    ApiError,
    admin_required,
    api_view,
    get_config,
    get_database,
    json_response,
    optional_bool,
    optional_password,
    optional_string,
    optional_url,
    parse_id,
    parse_meeting_date,
    parse_optional_timestamp,
    read_json_body,
    require_method,
    require_string,
)

logger = logging.getLogger(__name__)

ADMIN_SESSION_MAX_AGE = 3600 * 24 * 7  # 7 days
MIN_SHORTLIST = 2
MAX_SHORTLIST = 4


# -----------------------------------------------------------------------------
# Session
# -----------------------------------------------------------------------------


@api_view
async def admin_login(request: Request, datasette) -> Response:
    """Check the admin password and set the signed ds_actor cookie."""
    require_method(request, "POST")
    config = get_config(datasette)
    retry_after = get_rate_limiter(datasette).hit(
        get_client_ip(request), "admin-login", config.rules.login_rate_limit
    )
    if retry_after is not None:
        raise ApiError("Too many login attempts", 429, {"Retry-After": str(retry_after)})

    db = get_database(datasette)
    if not has_admin_accounts(db.db_path):
        raise ApiError("Admin login is not configured (set ADMIN_PASSWORD)", 503)

    data = await read_json_body(request)
    username = data.get("username") or DEFAULT_ADMIN_USERNAME
    password = data.get("password")
    if not isinstance(username, str) or not isinstance(password, str) or not password:
        raise ApiError("Invalid password", 401)

    account = authenticate_admin(db.db_path, username.strip(), password)
    if account is None:
        logger.warning(f"Failed admin login for {username!r} from {get_client_ip(request)}")
        raise ApiError("Invalid password", 401)

    actor = {
        "id": f"admin:{account['username']}",
        "principal_type": "admin",
        "principal_id": account["username"],
        "display": account.get("display_name") or account["username"],
    }

    response = json_response({"ok": True, "actor": actor})
    response.set_cookie(
        "ds_actor",
        datasette.sign({"a": actor}, "actor"),
        max_age=ADMIN_SESSION_MAX_AGE,
        path="/",
        httponly=True,
        samesite="lax",
        # secure=True,  # Enable in production with HTTPS
    )
    return response


async def admin_logout(request: Request, datasette) -> Response:
    response = json_response({"ok": True})
    response.set_cookie("ds_actor", "", max_age=0, path="/")
    return response


# -----------------------------------------------------------------------------
# Vote rounds
# -----------------------------------------------------------------------------


def parse_shortlist(value) -> list[dict]:
    if not isinstance(value, list) or not MIN_SHORTLIST <= len(value) <= MAX_SHORTLIST:
        raise ApiError(f"books must list {MIN_SHORTLIST} to {MAX_SHORTLIST} books")

    books = []
    seen = set()
    for item in value:
        if not isinstance(item, dict):
            raise ApiError("Each book must be an object")
        external_id = require_string(item, "externalId", 256, "Each book needs an externalId")
        if external_id in seen:
            raise ApiError("A book appears more than once in the shortlist")
        seen.add(external_id)
        books.append(
            {
                "external_id": external_id,
                "title": optional_string(item, "title", 512),
                "author": optional_string(item, "author", 512),
                "cover_url": optional_url(item, "coverUrl"),
                "blurb": clean_blurb(optional_string(item, "blurb")),
                "link": optional_url(item, "link"),
            }
        )
    return books


@api_view
@admin_required
async def create_vote_round(request: Request, datasette) -> Response:
    require_method(request, "POST")
    data = await read_json_body(request)

    meeting_date = parse_meeting_date(data.get("meetingDate"))
    close_vote_at = parse_optional_timestamp(data, "closeVoteAt")
    books = parse_shortlist(data.get("books"))
    password = optional_password(data, "voteAccessPassword")

    db = get_database(datasette)
    try:
        vote_round = db.create_vote_round(
            meeting_date,
            books,
            close_vote_at=close_vote_at,
            access_password_hash=round_password_hash(password),
        )
    except DuplicateMeetingDate:
        raise ApiError("A round for this meeting date already exists", 409)

    shortlist = db.get_vote_round_books(vote_round.id)
    return json_response(
        {
            "round": vote_round_to_json(vote_round, shortlist),
            "books": [book_to_json(b) for b in shortlist],
        },
        status=201,
    )


def get_vote_round_or_404(db, request: Request):
    round_id = parse_id(request.url_vars.get("round_id"), "Invalid round id")
    vote_round = db.get_vote_round(round_id)
    if vote_round is None:
        raise ApiError("Vote round not found", 404)
    return vote_round


@api_view
@admin_required
async def close_vote_round(request: Request, datasette) -> Response:
    """Close voting now (rounds already closed keep their original close time)."""
    require_method(request, "POST")
    db = get_database(datasette)
    vote_round = get_vote_round_or_404(db, request)
    now = utc_now()
    if vote_round.is_open(now):
        db.set_vote_close(vote_round.id, now.isoformat())
        logger.info(f"Vote round {vote_round.id} closed early")
    vote_round = db.get_vote_round(vote_round.id)
    return json_response(
        {"round": vote_round_to_json(vote_round, db.get_vote_round_books(vote_round.id))}
    )


@api_view
@admin_required
async def set_vote_winner(request: Request, datasette) -> Response:
    require_method(request, "POST")
    db = get_database(datasette)
    vote_round = get_vote_round_or_404(db, request)
    data = await read_json_body(request)

    winner = data.get("winnerExternalId")
    books = db.get_vote_round_books(vote_round.id)
    if winner is not None:
        if not isinstance(winner, str) or winner not in {b.external_id for b in books}:
            raise ApiError("Winner must be one of the shortlisted books")

    db.set_vote_winner(vote_round.id, winner)
    vote_round = db.get_vote_round(vote_round.id)
    return json_response({"round": vote_round_to_json(vote_round, books)})


@api_view
@admin_required
async def close_suggestion_round(request: Request, datasette) -> Response:
    require_method(request, "POST")
    db = get_database(datasette)
    round_id = parse_id(request.url_vars.get("round_id"), "Invalid round id")
    suggestion_round = db.get_suggestion_round(round_id)
    if suggestion_round is None:
        raise ApiError("Suggestion round not found", 404)

    now = utc_now()
    if suggestion_round.is_open(now):
        db.set_suggestion_round_close(round_id, now.isoformat())
        logger.info(f"Suggestion round {round_id} closed early")

    suggestion_round = db.get_suggestion_round(round_id)
    return json_response(
        {
            "round": {
                "id": suggestion_round.id,
                "closeAt": suggestion_round.close_at,
                "isOpen": suggestion_round.is_open(),
            }
        }
    )


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------


@api_view
@admin_required
async def admin_vote_results(request: Request, datasette) -> Response:
    """Every vote round, latest meeting date first, with per-book counts."""
    db = get_database(datasette)
    now = utc_now()
    rounds = []
    for vote_round in db.list_vote_rounds():
        books = db.get_vote_round_books(vote_round.id)
        rounds.append(
            {
                "id": vote_round.id,
                "meetingDate": vote_round.meeting_date,
                "closeVoteAt": vote_round.close_vote_at,
                "isOpen": vote_round.is_open(now),
                "winnerExternalId": vote_round.winner_external_id,
                **vote_results(books, db.tally_votes(vote_round.id), vote_round.winner_external_id),
            }
        )
    return json_response({"rounds": rounds})


@api_view
@admin_required
async def latest_vote_books(request: Request, datasette) -> Response:
    """The latest round's shortlist, most votes first."""
    db = get_database(datasette)
    vote_round = db.get_latest_vote_round()
    if vote_round is None:
        return json_response({"round": None, "books": []})

    books = db.get_vote_round_books(vote_round.id)
    tally = db.tally_votes(vote_round.id)
    ranked = sorted(
        ({**book_to_json(b), "voteCount": tally.get(b.external_id, 0)} for b in books),
        key=lambda b: b["voteCount"],
        reverse=True,
    )
    return json_response({"round": vote_round_to_json(vote_round, books), "books": ranked})


def admin_suggestion_to_json(suggestion: Suggestion) -> dict:
    return {
        "id": suggestion.id,
        "bookExternalId": suggestion.book_external_id,
        "createdAt": suggestion.created_at,
        "title": suggestion.title,
        "author": suggestion.author,
        "coverUrl": suggestion.cover_url,
        "coverUrlIsOverride": suggestion.cover_url_is_override,
        "coverUrlOverrideApproved": suggestion.cover_url_override_approved,
        "comment": suggestion.comment,
        "commenterName": suggestion.commenter_name,
        "blurb": suggestion.blurb,
        "link": suggestion.link,
        "isManualEntry": suggestion.is_manual_entry,
        "manualPendingApproval": suggestion.manual_pending_approval,
    }


@api_view
@admin_required
async def admin_suggestion_results(request: Request, datasette) -> Response:
    """Every suggestion round, newest first, with tallies and every item."""
    db = get_database(datasette)
    now = utc_now()
    rounds = []
    for suggestion_round in db.list_suggestion_rounds():
        rounds.append(
            {
                "id": suggestion_round.id,
                "suggestionsForDate": suggestion_round.suggestions_for_date,
                "label": suggestion_round.label,
                "closeAt": suggestion_round.close_at,
                "isOpen": suggestion_round.is_open(now),
                "results": [
                    {
                        "bookExternalId": entry.external_id,
                        "title": entry.title,
                        "author": entry.author,
                        "suggestionCount": entry.count,
                    }
                    for entry in db.tally_suggestions(suggestion_round.id)
                ],
                "items": [
                    admin_suggestion_to_json(s) for s in db.list_suggestions(suggestion_round.id)
                ],
            }
        )
    return json_response({"rounds": rounds})


@api_view
@admin_required
async def latest_suggestion_top_books(request: Request, datasette) -> Response:
    config = get_config(datasette)
    db = get_database(datasette)
    rounds = db.list_suggestion_rounds()
    if not rounds:
        return json_response({"roundId": None, "books": []})

    latest = rounds[0]
    top = db.tally_suggestions(latest.id, limit=config.top_suggestions_limit)
    return json_response(
        {
            "roundId": latest.id,
            "books": [
                {
                    "bookExternalId": entry.external_id,
                    "title": entry.title,
                    "author": entry.author,
                    "suggestionCount": entry.count,
                }
                for entry in top
            ],
        }
    )


# -----------------------------------------------------------------------------
# Moderation
# -----------------------------------------------------------------------------


@api_view
@admin_required
async def admin_suggestion(request: Request, datasette) -> Response:
    """PATCH: approve or unapprove. DELETE: remove the suggestion."""
    require_method(request, "PATCH", "DELETE")
    suggestion_id = parse_id(request.url_vars.get("suggestion_id"), "Invalid suggestion id")
    db = get_database(datasette)

    if request.method == "DELETE":
        if not db.delete_suggestion(suggestion_id):
            raise ApiError("Suggestion not found", 404)
        logger.info(f"Deleted suggestion {suggestion_id}")
        return json_response({"ok": True})

    suggestion = db.get_suggestion(suggestion_id)
    if suggestion is None:
        raise ApiError("Suggestion not found", 404)

    data = await read_json_body(request)
    manual_approved = optional_bool(data, "manualApproved")
    cover_approved = optional_bool(data, "coverUrlApproved")
    if manual_approved is None and cover_approved is None:
        raise ApiError("Nothing to update: send manualApproved or coverUrlApproved")
    if manual_approved is not None and not suggestion.is_manual_entry:
        raise ApiError("Suggestion is not a manual entry")
    if cover_approved is not None and not suggestion.cover_url_is_override:
        raise ApiError("Suggestion has no cover override")

    db.update_suggestion_flags(
        suggestion_id,
        manual_pending_approval=None if manual_approved is None else not manual_approved,
        cover_url_override_approved=cover_approved,
    )
    logger.info(
        f"Moderated suggestion {suggestion_id}: "
        f"manualApproved={manual_approved} coverUrlApproved={cover_approved}"
    )
    return json_response({"suggestion": admin_suggestion_to_json(db.get_suggestion(suggestion_id))})


# -----------------------------------------------------------------------------
# Book of the month
# -----------------------------------------------------------------------------


def book_of_the_month_from_round(db, data: dict) -> dict:
    """Fields for a book of the month taken from a vote round's winner or sole leader."""
    round_id = parse_id(data.get("fromVoteRoundId"), "fromVoteRoundId must be a positive integer")
    vote_round = db.get_vote_round(round_id)
    if vote_round is None:
        raise ApiError("Vote round not found", 404)

    books = db.get_vote_round_books(round_id)
    winner = vote_round.winner_external_id
    if winner is None:
        summary = vote_results(books, db.tally_votes(round_id))
        if summary["isTie"]:
            raise ApiError("Vote is tied; choose a winner first", 409)
        if not summary["leaderExternalIds"]:
            raise ApiError("No votes have been cast in this round", 409)
        winner = summary["leaderExternalIds"][0]
        db.set_vote_winner(round_id, winner)

    book = next(b for b in books if b.external_id == winner)
    return {
        "meeting_date": vote_round.meeting_date,
        "external_id": book.external_id,
        "title": book.title or "Unknown title",
        "author": book.author or "Unknown author",
        "cover_url": book.cover_url,
        "blurb": book.blurb,
        "link": book.link,
    }


def book_of_the_month_from_body(data: dict) -> dict:
    missing = [
        key
        for key in ("meetingDate", "externalId", "title", "author")
        if not isinstance(data.get(key), str) or not data[key].strip()
    ]
    if missing:
        raise ApiError("Missing required fields: meetingDate, externalId, title, author")
    return {
        "meeting_date": parse_meeting_date(data["meetingDate"]),
        "external_id": data["externalId"].strip(),
        "title": data["title"].strip(),
        "author": data["author"].strip(),
        "cover_url": optional_url(data, "coverUrl"),
        "blurb": clean_blurb(optional_string(data, "blurb")),
        "link": optional_url(data, "link"),
    }


@api_view
@admin_required
async def book_of_the_month(request: Request, datasette) -> Response:
    """GET: current book of the month. POST: record a new one."""
    require_method(request, "GET", "POST")
    db = get_database(datasette)

    if request.method == "POST":
        data = await read_json_body(request)
        if data.get("fromVoteRoundId") is not None:
            fields = book_of_the_month_from_round(db, data)
        else:
            fields = book_of_the_month_from_body(data)
        entry = db.add_book_of_the_month(**fields)
        status = 201
    else:
        entry = db.get_current_book_of_the_month()
        status = 200

    if entry is None:
        return json_response({"book": None})
    return json_response(
        {
            "book": {
                "id": entry.id,
                "meetingDate": entry.meeting_date,
                "externalId": entry.external_id,
                "title": entry.title,
                "author": entry.author,
                "coverUrl": entry.cover_url,
                "blurb": entry.blurb,
                "link": entry.link,
                "createdAt": entry.created_at,
            }
        },
        status=status,
    )


# -----------------------------------------------------------------------------
# Eventbrite
# -----------------------------------------------------------------------------

EVENT_REQUIRED_FIELDS = (
    "eventName",
    "startDate",
    "startTime",
    "endDate",
    "endTime",
    "timezone",
    "currency",
)


def parse_event_details(data: dict) -> EventDetails:
    if any(not isinstance(data.get(k), str) or not data[k].strip() for k in EVENT_REQUIRED_FIELDS):
        raise ApiError("Missing required fields: " + ", ".join(EVENT_REQUIRED_FIELDS))

    capacity = data.get("capacity")
    if capacity is not None and (isinstance(capacity, bool) or not isinstance(capacity, int)):
        raise ApiError("capacity must be a whole number")

    return EventDetails(
        event_name=data["eventName"].strip(),
        start_date=data["startDate"].strip(),
        start_time=data["startTime"].strip(),
        end_date=data["endDate"].strip(),
        end_time=data["endTime"].strip(),
        timezone=data["timezone"].strip(),
        currency=data["currency"].strip(),
        is_free=bool(data.get("isFree", True)),
        online_event=bool(data.get("onlineEvent", False)),
        description=optional_string(data, "description") or "",
        venue_name=optional_string(data, "venueName"),
        address_1=optional_string(data, "address1"),
        address_2=optional_string(data, "address2"),
        city=optional_string(data, "city"),
        region=optional_string(data, "region"),
        postal_code=optional_string(data, "postalCode"),
        country=optional_string(data, "country"),
        capacity=capacity,
    )


@api_view
@admin_required
async def create_eventbrite_event(request: Request, datasette) -> Response:
    require_method(request, "POST")
    eventbrite = get_config(datasette).eventbrite
    if not eventbrite.is_configured:
        raise ApiError(
            "Eventbrite is not configured (EVENTBRITE_PRIVATE_TOKEN, EVENTBRITE_ORGANIZATION_ID)",
            503,
        )

    details = parse_event_details(await read_json_body(request))
    client = EventbriteClient(
        eventbrite.api_base,
        eventbrite.get_private_token(),
        eventbrite.get_organization_id(),
        timeout_seconds=eventbrite.timeout_seconds,
        default_country=eventbrite.default_country,
    )

    try:
        result = await client.create_and_publish_event(details)
    except ValueError as e:
        raise ApiError(str(e))
    except EventbriteError as e:
        raise ApiError(e.message, 502)

    return json_response(result)

