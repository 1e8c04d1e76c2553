"""
Public suggestion routes: list rounds, list or tally a round's suggestions,
suggest a book and unlock a password-gated round.

Each visitor may suggest up to ``max_suggestions_per_visitor`` books per
round. The cap is a count query before the insert rather than a database
constraint, so two simultaneous requests from one visitor can both land.
"""

import logging

from datasette import Response
from datasette.utils.asgi import Request

from datasette_book_club.access import (
    SUGGESTION_ACCESS,
    check_round_password,
    round_access_granted,
    round_password_hash,
    set_access_cookie,
)
from datasette_book_club.db import Suggestion, SuggestionRound, utc_now
from datasette_book_club.moderation import (
    clean_blurb,
    clean_comment,
    clean_commenter_name,
    contains_blocklisted_word,
    strip_html,
)
from datasette_book_club.rate_limit import get_client_ip, get_rate_limiter
from datasette_book_club.web import (
    KEY_HASH_MAX_LENGTH,
    SUGGESTER_KEY_HASH_HEADER,
    ApiError,
    admin_required,
    api_view,
    clean_key_hash,
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
)

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 512
AUTHOR_MAX_LENGTH = 512
LABEL_MAX_LENGTH = 64
COMMENTER_NAME_MAX_LENGTH = 128


def suggestion_round_to_json(suggestion_round: SuggestionRound, now=None) -> dict:
    return {
        "id": suggestion_round.id,
        "suggestionsForDate": suggestion_round.suggestions_for_date,
        "label": suggestion_round.label,
        "closeAt": suggestion_round.close_at,
        "isOpen": suggestion_round.is_open(now),
        "requiresPassword": suggestion_round.requires_password,
        "createdAt": suggestion_round.created_at,
    }


def suggestion_to_json(suggestion: Suggestion, my_key_hash: str | None) -> dict:
    """Public view of a suggestion; the suggester key hash is never exposed."""
    return {
        "id": suggestion.id,
        "suggestionRoundId": suggestion.suggestion_round_id,
        "bookExternalId": suggestion.book_external_id,
        "title": suggestion.title,
        "author": suggestion.author,
        "coverUrl": suggestion.display_cover_url,
        "blurb": suggestion.blurb,
        "link": suggestion.link,
        "comment": suggestion.comment,
        "commenterName": suggestion.commenter_name,
        "createdAt": suggestion.created_at,
        "suggestedByMe": my_key_hash is not None
        and suggestion.suggester_key_hash == my_key_hash,
        "pendingApproval": suggestion.manual_pending_approval,
    }


def get_gated_round(request: Request, datasette, db, round_id: int) -> SuggestionRound:
    suggestion_round = db.get_suggestion_round(round_id)
    if suggestion_round is None:
        raise ApiError("Suggestion round not found", 404)
    if not round_access_granted(
        request,
        datasette,
        SUGGESTION_ACCESS,
        suggestion_round.id,
        suggestion_round.requires_password,
    ):
        raise ApiError("This round requires a password", 403)
    return suggestion_round


# -----------------------------------------------------------------------------
# Suggestion rounds
# -----------------------------------------------------------------------------


@api_view
async def suggestion_rounds(request: Request, datasette) -> Response:
    """GET: list rounds (or the current one). POST: admin creates a round."""
    require_method(request, "GET", "POST")
    if request.method == "POST":
        return await create_suggestion_round(request, datasette)
    return await list_suggestion_rounds(request, datasette)


@api_view
async def list_suggestion_rounds(request: Request, datasette) -> Response:
    db = get_database(datasette)
    now = utc_now()
    if request.args.get("current") == "1":
        current = db.get_current_suggestion_round(now)
        return json_response(
            {"round": suggestion_round_to_json(current, now) if current else None}
        )
    return json_response(
        {"rounds": [suggestion_round_to_json(r, now) for r in db.list_suggestion_rounds()]}
    )


@api_view
@admin_required
async def create_suggestion_round(request: Request, datasette) -> Response:
    data = await read_json_body(request)

    suggestions_for_date = None
    if data.get("suggestionsForDate"):
        suggestions_for_date = parse_meeting_date(data["suggestionsForDate"], "suggestionsForDate")
    label = optional_string(data, "label", LABEL_MAX_LENGTH)
    close_at = parse_optional_timestamp(data, "closeAt")
    password = optional_password(data, "suggestionAccessPassword")

    db = get_database(datasette)
    suggestion_round = db.create_suggestion_round(
        suggestions_for_date=suggestions_for_date,
        label=label,
        close_at=close_at,
        access_password_hash=round_password_hash(password),
    )
    return json_response({"round": suggestion_round_to_json(suggestion_round)}, status=201)


# -----------------------------------------------------------------------------
# Suggestions
# -----------------------------------------------------------------------------


@api_view
async def suggestions(request: Request, datasette) -> Response:
    """GET: list or tally a round's suggestions. POST: suggest a book."""
    require_method(request, "GET", "POST")
    if request.method == "POST":
        return await create_suggestion(request, datasette)
    return await get_suggestions(request, datasette)


@api_view
async def get_suggestions(request: Request, datasette) -> Response:
    round_id_param = request.args.get("roundId")
    if not round_id_param:
        raise ApiError("roundId query required")
    round_id = parse_id(round_id_param, "roundId must be a number")

    db = get_database(datasette)
    get_gated_round(request, datasette, db, round_id)

    if request.args.get("tally") == "1":
        return json_response(
            {
                "roundId": round_id,
                "tally": [
                    {
                        "bookExternalId": entry.external_id,
                        "title": entry.title,
                        "author": entry.author,
                        "count": entry.count,
                    }
                    for entry in db.tally_suggestions(round_id)
                ],
            }
        )

    my_key_hash = clean_key_hash(request.headers.get(SUGGESTER_KEY_HASH_HEADER))
    visible = [
        s
        for s in db.list_suggestions(round_id)
        if s.is_publicly_visible
        or (my_key_hash is not None and s.suggester_key_hash == my_key_hash)
    ]
    user_count = db.count_suggestions_by(round_id, my_key_hash) if my_key_hash else 0

    return json_response(
        {
            "roundId": round_id,
            "suggestions": [suggestion_to_json(s, my_key_hash) for s in visible],
            "userSuggestionCount": user_count,
        }
    )


@api_view
async def create_suggestion(request: Request, datasette) -> Response:
    data = await read_json_body(request)
    config = get_config(datasette)

    round_id = parse_id(data.get("suggestionRoundId"), "suggestionRoundId must be a positive integer")
    book_external_id = data.get("bookExternalId")
    if (
        not isinstance(book_external_id, str)
        or not book_external_id.strip()
        or len(book_external_id) > KEY_HASH_MAX_LENGTH
    ):
        raise ApiError("bookExternalId is required")
    book_external_id = book_external_id.strip()

    suggester_key_hash = clean_key_hash(data.get("suggesterKeyHash"))
    if suggester_key_hash is None:
        raise ApiError("suggesterKeyHash is required")

    title = optional_string(data, "title", TITLE_MAX_LENGTH) or "Unknown title"
    author = optional_string(data, "author", AUTHOR_MAX_LENGTH) or "Unknown author"
    cover_url = optional_url(data, "coverUrl")
    link = optional_url(data, "link")
    blurb = data.get("blurb")
    if blurb is not None and not isinstance(blurb, str):
        raise ApiError("blurb must be a string")

    raw_comment = data.get("comment")
    if raw_comment is not None and not isinstance(raw_comment, str):
        raise ApiError("comment must be a string")
    plain_comment = strip_html(raw_comment)
    if len(plain_comment) > config.comment_max_length:
        raise ApiError(f"Comment must be at most {config.comment_max_length} characters")
    if plain_comment and contains_blocklisted_word(plain_comment):
        raise ApiError("Comment contains language that is not allowed")

    commenter_name = optional_string(data, "commenterName", COMMENTER_NAME_MAX_LENGTH)
    manual_entry = bool(optional_bool(data, "manualEntry"))
    cover_override = bool(optional_bool(data, "coverUrlOverride")) and cover_url is not None

    db = get_database(datasette)
    suggestion_round = get_gated_round(request, datasette, db, round_id)
    if not suggestion_round.is_open():
        raise ApiError("Suggestions have closed for this round")

    limit = config.max_suggestions_per_visitor
    if db.count_suggestions_by(round_id, suggester_key_hash) >= limit:
        raise ApiError(f"Maximum {limit} suggestions per person per round")
    if db.has_suggested_book(round_id, suggester_key_hash, book_external_id):
        raise ApiError("You have already suggested this book in this round")

    suggestion = db.add_suggestion(
        round_id,
        book_external_id,
        suggester_key_hash,
        title=title,
        author=author,
        cover_url=cover_url,
        blurb=clean_blurb(blurb),
        link=link,
        comment=clean_comment(plain_comment),
        commenter_name=clean_commenter_name(commenter_name),
        is_manual_entry=manual_entry,
        cover_url_is_override=cover_override,
    )
    if manual_entry:
        logger.info(f"Manual suggestion {suggestion.id} awaiting approval in round {round_id}")

    return json_response({"suggestion": suggestion_to_json(suggestion, suggester_key_hash)})


@api_view
async def verify_suggestion_password(request: Request, datasette) -> Response:
    """Check a suggestion round's access password and grant the access cookie."""
    require_method(request, "POST")
    config = get_config(datasette)
    retry_after = get_rate_limiter(datasette).hit(
        get_client_ip(request),
        "suggestions-verify-password",
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
    suggestion_round = db.get_suggestion_round(round_id)
    if suggestion_round is None:
        raise ApiError("Suggestion round not found", 404)
    if not suggestion_round.requires_password:
        raise ApiError("This round has no access password")
    if not suggestion_round.is_open():
        raise ApiError("Suggestions have closed for this round")
    if not check_round_password(password, suggestion_round.access_password_hash):
        logger.info(f"Incorrect suggestion password for round {round_id}")
        raise ApiError("Incorrect password", 401)

    response = json_response({"ok": True})
    set_access_cookie(response, datasette, SUGGESTION_ACCESS, suggestion_round.id)
    return response
