"""
Safety checks for member-submitted text.

Comments containing a blocklisted word are rejected outright. Milder
profanity is allowed but stored censored (first letter kept, the rest
replaced with asterisks). Everything is kept as plain text: any HTML a
client sends is reduced to its text before checks run. A bare "<" or ">"
that does not open a tag is ordinary text and is kept.
"""

import re

from bs4 import BeautifulSoup

# Rejected in comments. Whole-word, case-insensitive.
BLOCKLIST = frozenset(
    [
        "fuck",
        "fucking",
        "shit",
        "ass",
        "bitch",
        "bastard",
        "dick",
        "cock",
        "pussy",
        "cunt",
        "whore",
        "slut",
        "nigger",
        "nigga",
        "fag",
        "faggot",
        "retard",
        "retarded",
        "rape",
        "raping",
        "pedophile",
        "pedo",
    ]
)

# Allowed but censored wherever member text is stored.
PROFANITY = BLOCKLIST | frozenset(
    [
        "damn",
        "crap",
        "hell",
        "piss",
        "pissed",
        "bollocks",
        "bugger",
        "arse",
        "arsehole",
        "asshole",
        "bloody",
        "wanker",
        "twat",
        "shite",
    ]
)

_BLOCKLIST_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(w) for w in sorted(BLOCKLIST)) + r")\b",
    re.IGNORECASE,
)
_PROFANITY_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(w) for w in sorted(PROFANITY, key=len, reverse=True)) + r")\b",
    re.IGNORECASE,
)
_WHITESPACE_RE = re.compile(r"\s+")

ANONYMOUS_COMMENTER = "Anonymous"


def strip_html(text: str | None) -> str:
    """Reduce possibly-HTML text to plain text with collapsed whitespace."""
    if not text:
        return ""
    soup = BeautifulSoup(text, "html.parser")
    for element in soup(["script", "style"]):
        element.decompose()
    plain = soup.get_text()
    return _WHITESPACE_RE.sub(" ", plain).strip()


def contains_blocklisted_word(plain_text: str) -> bool:
    """Whole-word match, so "class" is not flagged for "ass"."""
    return _BLOCKLIST_RE.search(plain_text) is not None


def censor_profanity(text: str) -> str:
    """Replace profanity with its first letter plus asterisks ("damn" -> "d***")."""
    if not text:
        return text
    return _PROFANITY_RE.sub(lambda m: m.group(0)[0] + "*" * (len(m.group(0)) - 1), text)


def clean_comment(text: str | None) -> str | None:
    """Plain-text, censored comment, or None when blank."""
    plain = strip_html(text)
    if not plain:
        return None
    return censor_profanity(plain)


def clean_commenter_name(name: str | None) -> str:
    plain = strip_html(name)
    if not plain:
        return ANONYMOUS_COMMENTER
    return censor_profanity(plain)


def clean_blurb(text: str | None) -> str | None:
    """Book blurbs are displayed as plain text."""
    plain = strip_html(text)
    return plain or None
