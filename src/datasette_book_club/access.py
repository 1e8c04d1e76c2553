"""
Passwords and access cookies for password-gated rounds.

A correct round password earns a signed cookie naming that round. The
cookie is checked on every gated read and write; a cookie for a different
round, or one whose signature does not verify, grants nothing.
"""

from datasette import Response
from datasette.utils.asgi import Request
from itsdangerous import BadSignature

from datasette_book_club.admin_auth import hash_password, verify_password

ACCESS_COOKIE_MAX_AGE = 60 * 60 * 24 * 30  # 30 days

VOTE_ACCESS = "vote"
SUGGESTION_ACCESS = "suggestion"

COOKIE_NAMES = {
    VOTE_ACCESS: "book_club_vote_access",
    SUGGESTION_ACCESS: "book_club_suggestion_access",
}


def round_password_hash(password: str | None) -> str | None:
    """
    Hash a round access password as typed, surrounding spaces included.

    A missing or blank password leaves the round open (None).
    """
    if password is None or not password.strip():
        return None
    return hash_password(password)


def check_round_password(password: str, password_hash: str | None) -> bool:
    return verify_password(password, password_hash)


def _namespace(kind: str) -> str:
    return f"book-club-{kind}-access"


def make_access_token(datasette, kind: str, round_id: int) -> str:
    return datasette.sign({"round_id": round_id}, _namespace(kind))


def read_access_round_id(datasette, kind: str, token: str | None) -> int | None:
    """The round ID a cookie value grants access to, or None if invalid."""
    if not token:
        return None
    try:
        payload = datasette.unsign(token, _namespace(kind))
    except BadSignature:
        return None
    if not isinstance(payload, dict):
        return None
    round_id = payload.get("round_id")
    return round_id if isinstance(round_id, int) else None


def has_round_access(request: Request, datasette, kind: str, round_id: int) -> bool:
    token = request.cookies.get(COOKIE_NAMES[kind])
    return read_access_round_id(datasette, kind, token) == round_id


def round_access_granted(
    request: Request, datasette, kind: str, round_id: int, requires_password: bool
) -> bool:
    """Open rounds need no cookie; gated rounds need one for this round."""
    if not requires_password:
        return True
    return has_round_access(request, datasette, kind, round_id)


def set_access_cookie(response: Response, datasette, kind: str, round_id: int) -> None:
    response.set_cookie(
        COOKIE_NAMES[kind],
        make_access_token(datasette, kind, round_id),
        max_age=ACCESS_COOKIE_MAX_AGE,
        path="/",
        httponly=True,
        samesite="lax",
        # secure=True,  # Enable in production with HTTPS
    )
