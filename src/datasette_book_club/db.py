"""
Data models and database operations for datasette-book-club.

Round openness is never stored: every caller asks ``is_open()`` with the
current time, so a round closes the moment its close timestamp passes.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)

# Tables emptied by clear_rounds(); children before parents.
ROUND_TABLES = (
    "suggestions",
    "vote_round_books",
    "votes",
    "suggestion_rounds",
    "vote_rounds",
)


class AlreadyVoted(Exception):
    """The visitor already has a vote in this round."""


class DuplicateMeetingDate(Exception):
    """A vote round for this meeting date already exists."""


# -----------------------------------------------------------------------------
# Time helpers
# -----------------------------------------------------------------------------


def utc_now() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive values are taken to be UTC. Raises ValueError for malformed input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return parse_timestamp(value).isoformat()


def is_open(close_at: str | datetime | None, now: datetime | None = None) -> bool:
    """A round is open iff it has no close time or the close time is in the future."""
    closes = parse_timestamp(close_at)
    if closes is None:
        return True
    return closes > (now or utc_now())


# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------


@dataclass
class VoteRound:
    """A voting round on a shortlist of books for one meeting date."""

    id: int
    meeting_date: str
    created_at: str
    close_vote_at: str | None = None
    winner_external_id: str | None = None
    access_password_hash: str | None = None

    @property
    def requires_password(self) -> bool:
        return bool(self.access_password_hash)

    def is_open(self, now: datetime | None = None) -> bool:
        return is_open(self.close_vote_at, now)


@dataclass
class VoteRoundBook:
    """A shortlisted book in a vote round."""

    id: int
    vote_round_id: int
    position: int
    external_id: str
    title: str | None = None
    author: str | None = None
    cover_url: str | None = None
    blurb: str | None = None
    link: str | None = None


@dataclass
class Vote:
    id: int
    vote_round_id: int
    chosen_book_external_id: str
    voter_key_hash: str
    created_at: str


@dataclass
class SuggestionRound:
    """A window during which members may suggest books."""

    id: int
    created_at: str
    suggestions_for_date: str | None = None
    label: str | None = None
    close_at: str | None = None
    access_password_hash: str | None = None

    @property
    def requires_password(self) -> bool:
        return bool(self.access_password_hash)

    def is_open(self, now: datetime | None = None) -> bool:
        return is_open(self.close_at, now)


@dataclass
class Suggestion:
    """A member's book suggestion, with its moderation flags."""

    id: int
    suggestion_round_id: int
    book_external_id: str
    suggester_key_hash: str
    title: str
    author: str
    created_at: str
    cover_url: str | None = None
    blurb: str | None = None
    link: str | None = None
    comment: str | None = None
    commenter_name: str | None = None
    is_manual_entry: bool = False
    manual_pending_approval: bool = False
    cover_url_is_override: bool = False
    cover_url_override_approved: bool = False

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Suggestion":
        data = dict(row)
        for flag in (
            "is_manual_entry",
            "manual_pending_approval",
            "cover_url_is_override",
            "cover_url_override_approved",
        ):
            data[flag] = bool(data[flag])
        return cls(**data)

    @property
    def is_publicly_visible(self) -> bool:
        return not self.manual_pending_approval

    @property
    def display_cover_url(self) -> str | None:
        """The cover to show publicly: overrides only once approved."""
        if self.cover_url_is_override and not self.cover_url_override_approved:
            return None
        return self.cover_url


@dataclass
class BookOfTheMonth:
    id: int
    meeting_date: str
    external_id: str
    title: str
    author: str
    created_at: str
    cover_url: str | None = None
    blurb: str | None = None
    link: str | None = None


@dataclass
class TallyEntry:
    """Count of votes or suggestions for one book."""

    external_id: str
    count: int
    title: str | None = None
    author: str | None = None


# -----------------------------------------------------------------------------
# Database
# -----------------------------------------------------------------------------


class BookClubDatabase:
    """Database operations for the book club tables."""

    def __init__(self, db_path: Path):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    # -------------------------------------------------------------------------
    # Vote rounds
    # -------------------------------------------------------------------------

    def create_vote_round(
        self,
        meeting_date: str,
        books: list[dict],
        close_vote_at: str | None = None,
        access_password_hash: str | None = None,
    ) -> VoteRound:
        """
        Create a vote round and its shortlist in one transaction.

        ``books`` are dicts with external_id and optional title, author,
        cover_url, blurb and link. Their order becomes the shortlist order.
        Raises DuplicateMeetingDate if a round already exists for the date.
        """
        created_at = utc_now().isoformat()
        conn = self._connect()
        try:
            with conn:
                try:
                    cursor = conn.execute(
                        """
                        INSERT INTO vote_rounds
                            (meeting_date, close_vote_at, access_password_hash, created_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (meeting_date, close_vote_at, access_password_hash, created_at),
                    )
                except sqlite3.IntegrityError as e:
                    if "vote_rounds.meeting_date" in str(e):
                        raise DuplicateMeetingDate(meeting_date) from e
                    raise
                round_id = cursor.lastrowid
                conn.executemany(
                    """
                    INSERT INTO vote_round_books
                        (vote_round_id, position, external_id, title, author,
                         cover_url, blurb, link)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            round_id,
                            position,
                            book["external_id"],
                            book.get("title"),
                            book.get("author"),
                            book.get("cover_url"),
                            book.get("blurb"),
                            book.get("link"),
                        )
                        for position, book in enumerate(books)
                    ],
                )
        finally:
            conn.close()

        logger.info(f"Created vote round {round_id} for {meeting_date} ({len(books)} books)")
        return VoteRound(
            id=round_id,
            meeting_date=meeting_date,
            created_at=created_at,
            close_vote_at=close_vote_at,
            access_password_hash=access_password_hash,
        )

    def get_vote_round(self, round_id: int) -> VoteRound | None:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM vote_rounds WHERE id = ?", (round_id,)).fetchone()
            return VoteRound(**dict(row)) if row else None
        finally:
            conn.close()

    def get_latest_vote_round(self) -> VoteRound | None:
        """The round with the latest meeting date."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM vote_rounds ORDER BY meeting_date DESC, id DESC LIMIT 1"
            ).fetchone()
            return VoteRound(**dict(row)) if row else None
        finally:
            conn.close()

    def list_vote_rounds(self) -> list[VoteRound]:
        """All vote rounds, latest meeting date first."""
        conn = self._connect()
        try:
            cursor = conn.execute("SELECT * FROM vote_rounds ORDER BY meeting_date DESC, id DESC")
            return [VoteRound(**dict(row)) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_vote_round_books(self, round_id: int) -> list[VoteRoundBook]:
        """The shortlist for a round, in shortlist order."""
        conn = self._connect()
        try:
            cursor = conn.execute(
                "SELECT * FROM vote_round_books WHERE vote_round_id = ? ORDER BY position, id",
                (round_id,),
            )
            return [VoteRoundBook(**dict(row)) for row in cursor.fetchall()]
        finally:
            conn.close()

    def set_vote_winner(self, round_id: int, winner_external_id: str | None) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "UPDATE vote_rounds SET winner_external_id = ? WHERE id = ?",
                (winner_external_id, round_id),
            )
            conn.commit()
        finally:
            conn.close()

    def set_vote_close(self, round_id: int, close_vote_at: str | None) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "UPDATE vote_rounds SET close_vote_at = ? WHERE id = ?",
                (close_vote_at, round_id),
            )
            conn.commit()
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Votes
    # -------------------------------------------------------------------------

    def add_vote(self, round_id: int, chosen_book_external_id: str, voter_key_hash: str) -> Vote:
        """
        Record a vote.

        The votes_round_voter unique constraint is the one-vote-per-visitor
        guard; a conflict raises AlreadyVoted.
        """
        created_at = utc_now().isoformat()
        conn = self._connect()
        try:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO votes
                        (vote_round_id, chosen_book_external_id, voter_key_hash, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (round_id, chosen_book_external_id, voter_key_hash, created_at),
                )
            except sqlite3.IntegrityError as e:
                if "UNIQUE" in str(e):
                    raise AlreadyVoted(round_id) from e
                raise
            conn.commit()
            return Vote(
                id=cursor.lastrowid,
                vote_round_id=round_id,
                chosen_book_external_id=chosen_book_external_id,
                voter_key_hash=voter_key_hash,
                created_at=created_at,
            )
        finally:
            conn.close()

    def has_voted(self, round_id: int, voter_key_hash: str) -> bool:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT 1 FROM votes WHERE vote_round_id = ? AND voter_key_hash = ?",
                (round_id, voter_key_hash),
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    def tally_votes(self, round_id: int) -> dict[str, int]:
        """Votes per chosen book external ID."""
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                SELECT chosen_book_external_id, COUNT(*) AS count
                FROM votes
                WHERE vote_round_id = ?
                GROUP BY chosen_book_external_id
                """,
                (round_id,),
            )
            return {row["chosen_book_external_id"]: row["count"] for row in cursor.fetchall()}
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Suggestion rounds
    # -------------------------------------------------------------------------

    def create_suggestion_round(
        self,
        suggestions_for_date: str | None = None,
        label: str | None = None,
        close_at: str | None = None,
        access_password_hash: str | None = None,
    ) -> SuggestionRound:
        created_at = utc_now().isoformat()
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                INSERT INTO suggestion_rounds
                    (suggestions_for_date, label, close_at, access_password_hash, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (suggestions_for_date, label, close_at, access_password_hash, created_at),
            )
            conn.commit()
            round_id = cursor.lastrowid
        finally:
            conn.close()

        logger.info(f"Created suggestion round {round_id}")
        return SuggestionRound(
            id=round_id,
            created_at=created_at,
            suggestions_for_date=suggestions_for_date,
            label=label,
            close_at=close_at,
            access_password_hash=access_password_hash,
        )

    def get_suggestion_round(self, round_id: int) -> SuggestionRound | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM suggestion_rounds WHERE id = ?", (round_id,)
            ).fetchone()
            return SuggestionRound(**dict(row)) if row else None
        finally:
            conn.close()

    def list_suggestion_rounds(self) -> list[SuggestionRound]:
        """All suggestion rounds, newest first."""
        conn = self._connect()
        try:
            cursor = conn.execute("SELECT * FROM suggestion_rounds ORDER BY id DESC")
            return [SuggestionRound(**dict(row)) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_current_suggestion_round(self, now: datetime | None = None) -> SuggestionRound | None:
        """The newest suggestion round that is still open at ``now``."""
        now = now or utc_now()
        for suggestion_round in self.list_suggestion_rounds():
            if suggestion_round.is_open(now):
                return suggestion_round
        return None

    def set_suggestion_round_close(self, round_id: int, close_at: str | None) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "UPDATE suggestion_rounds SET close_at = ? WHERE id = ?",
                (close_at, round_id),
            )
            conn.commit()
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Suggestions
    # -------------------------------------------------------------------------

    def count_suggestions_by(self, round_id: int, suggester_key_hash: str) -> int:
        conn = self._connect()
        try:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM suggestions
                WHERE suggestion_round_id = ? AND suggester_key_hash = ?
                """,
                (round_id, suggester_key_hash),
            ).fetchone()
            return row[0]
        finally:
            conn.close()

    def has_suggested_book(
        self, round_id: int, suggester_key_hash: str, book_external_id: str
    ) -> bool:
        conn = self._connect()
        try:
            row = conn.execute(
                """
                SELECT 1 FROM suggestions
                WHERE suggestion_round_id = ? AND suggester_key_hash = ?
                  AND book_external_id = ?
                """,
                (round_id, suggester_key_hash, book_external_id),
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    def add_suggestion(
        self,
        round_id: int,
        book_external_id: str,
        suggester_key_hash: str,
        title: str,
        author: str,
        cover_url: str | None = None,
        blurb: str | None = None,
        link: str | None = None,
        comment: str | None = None,
        commenter_name: str | None = None,
        is_manual_entry: bool = False,
        cover_url_is_override: bool = False,
    ) -> Suggestion:
        """
        Insert a suggestion.

        Manual entries start pending approval. The per-visitor cap is checked
        by the caller with count_suggestions_by(); two concurrent requests from
        the same visitor can both pass that check, which is accepted.
        """
        created_at = utc_now().isoformat()
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                INSERT INTO suggestions
                    (suggestion_round_id, book_external_id, suggester_key_hash,
                     title, author, cover_url, blurb, link, comment, commenter_name,
                     is_manual_entry, manual_pending_approval,
                     cover_url_is_override, cover_url_override_approved, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    round_id,
                    book_external_id,
                    suggester_key_hash,
                    title,
                    author,
                    cover_url,
                    blurb,
                    link,
                    comment,
                    commenter_name,
                    int(is_manual_entry),
                    int(is_manual_entry),
                    int(cover_url_is_override),
                    created_at,
                ),
            )
            conn.commit()
            suggestion_id = cursor.lastrowid
        finally:
            conn.close()

        return self.get_suggestion(suggestion_id)

    def get_suggestion(self, suggestion_id: int) -> Suggestion | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM suggestions WHERE id = ?", (suggestion_id,)
            ).fetchone()
            return Suggestion.from_row(row) if row else None
        finally:
            conn.close()

    def list_suggestions(self, round_id: int) -> list[Suggestion]:
        """Every suggestion in a round, oldest first, including pending ones."""
        conn = self._connect()
        try:
            cursor = conn.execute(
                "SELECT * FROM suggestions WHERE suggestion_round_id = ? ORDER BY created_at, id",
                (round_id,),
            )
            return [Suggestion.from_row(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def tally_suggestions(self, round_id: int, limit: int | None = None) -> list[TallyEntry]:
        """Suggestion counts per book, most suggested first. Pending manual entries are excluded."""
        sql = """
            SELECT book_external_id, COUNT(*) AS count,
                   MIN(title) AS title, MIN(author) AS author
            FROM suggestions
            WHERE suggestion_round_id = ? AND manual_pending_approval = 0
            GROUP BY book_external_id
            ORDER BY count DESC, MIN(id)
        """
        params: list = [round_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        conn = self._connect()
        try:
            cursor = conn.execute(sql, params)
            return [
                TallyEntry(
                    external_id=row["book_external_id"],
                    count=row["count"],
                    title=row["title"],
                    author=row["author"],
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def update_suggestion_flags(
        self,
        suggestion_id: int,
        manual_pending_approval: bool | None = None,
        cover_url_override_approved: bool | None = None,
    ) -> None:
        """Set moderation flags; None leaves a flag unchanged."""
        fields = {}
        if manual_pending_approval is not None:
            fields["manual_pending_approval"] = int(manual_pending_approval)
        if cover_url_override_approved is not None:
            fields["cover_url_override_approved"] = int(cover_url_override_approved)
        if not fields:
            return

        conn = self._connect()
        try:
            set_clause = ", ".join(f"{k} = ?" for k in fields)
            conn.execute(
                f"UPDATE suggestions SET {set_clause} WHERE id = ?",
                [*fields.values(), suggestion_id],
            )
            conn.commit()
        finally:
            conn.close()

    def delete_suggestion(self, suggestion_id: int) -> bool:
        """Delete a suggestion. Returns False if it did not exist."""
        conn = self._connect()
        try:
            cursor = conn.execute("DELETE FROM suggestions WHERE id = ?", (suggestion_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Book of the month
    # -------------------------------------------------------------------------

    def add_book_of_the_month(
        self,
        meeting_date: str,
        external_id: str,
        title: str,
        author: str,
        cover_url: str | None = None,
        blurb: str | None = None,
        link: str | None = None,
    ) -> BookOfTheMonth:
        created_at = utc_now().isoformat()
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                INSERT INTO book_of_the_month
                    (meeting_date, external_id, title, author, cover_url, blurb, link, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (meeting_date, external_id, title, author, cover_url, blurb, link, created_at),
            )
            conn.commit()
            entry_id = cursor.lastrowid
        finally:
            conn.close()

        logger.info(f"Book of the month for {meeting_date} set to {external_id}")
        return BookOfTheMonth(
            id=entry_id,
            meeting_date=meeting_date,
            external_id=external_id,
            title=title,
            author=author,
            created_at=created_at,
            cover_url=cover_url,
            blurb=blurb,
            link=link,
        )

    def get_current_book_of_the_month(self) -> BookOfTheMonth | None:
        """The entry with the latest meeting date (newest entry wins a tie)."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM book_of_the_month ORDER BY meeting_date DESC, id DESC LIMIT 1"
            ).fetchone()
            return BookOfTheMonth(**dict(row)) if row else None
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def clear_rounds(self) -> dict[str, int]:
        """
        Delete every vote and suggestion round and their rows, and reset IDs.

        Returns the number of rows deleted per table. Book of the month
        history and admin accounts are kept.
        """
        deleted = {}
        conn = self._connect()
        try:
            with conn:
                for table in ROUND_TABLES:
                    cursor = conn.execute(f"DELETE FROM {table}")
                    deleted[table] = cursor.rowcount
                placeholders = ", ".join("?" for _ in ROUND_TABLES)
                conn.execute(
                    f"DELETE FROM sqlite_sequence WHERE name IN ({placeholders})",
                    ROUND_TABLES,
                )
        finally:
            conn.close()

        logger.warning(f"Cleared round tables: {deleted}")
        return deleted
