"""
Best-effort in-memory rate limiting, per client IP and endpoint.

Each Datasette instance keeps its own store, so limits are per process.
"""

import time
import weakref
from dataclasses import dataclass

from datasette.utils.asgi import Request

from datasette_book_club.config import RateLimitRule

MAX_TRACKED_KEYS = 10000

_limiters: "weakref.WeakKeyDictionary[object, RateLimiter]" = weakref.WeakKeyDictionary()


def get_client_ip(request: Request) -> str:
    """Client IP from X-Forwarded-For (first hop), X-Real-IP, then the socket."""
    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    client = request.scope.get("client")
    if client:
        return str(client[0])
    return "unknown"


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """Fixed-window counter keyed by (ip, endpoint)."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._store: dict[str, _Window] = {}

    def _prune(self, now: float) -> None:
        expired = [key for key, window in self._store.items() if window.reset_at <= now]
        for key in expired:
            del self._store[key]

    def hit(self, ip: str, endpoint: str, rule: RateLimitRule) -> int | None:
        """
        Count one attempt.

        Returns None while under the limit, otherwise the number of seconds
        until the window resets (for Retry-After).
        """
        now = self._clock()
        if len(self._store) > MAX_TRACKED_KEYS:
            self._prune(now)

        key = f"{ip}:{endpoint}"
        window = self._store.get(key)
        if window is None or window.reset_at <= now:
            self._store[key] = _Window(count=1, reset_at=now + rule.window_seconds)
            return None

        window.count += 1
        if window.count > rule.max_attempts:
            return max(1, int(window.reset_at - now))
        return None

    def reset(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)


def get_rate_limiter(datasette) -> RateLimiter:
    """The limiter belonging to this Datasette instance."""
    limiter = _limiters.get(datasette)
    if limiter is None:
        limiter = RateLimiter()
        _limiters[datasette] = limiter
    return limiter
