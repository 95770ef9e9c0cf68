"""Per-user fixed-window rate limiting for tool mediation.

Each user gets a counter that resets `window_seconds` after its first
request in the window. State lives in memory only.
"""

import time

# Entries idle longer than this are dropped by cleanup()
MAX_IDLE_SECONDS = 5 * 60


class RateLimiter:
    """Fixed-window request counter keyed by user id."""

    def __init__(self, max_requests: int = 20, window_seconds: float = 60,
                 clock=time.monotonic):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        # user_id -> {"count", "reset_at", "last_access"}
        self._entries: dict = {}

    def _live_entry(self, user_id, now: float) -> dict | None:
        entry = self._entries.get(user_id)
        if entry is None or now >= entry["reset_at"]:
            return None
        return entry

    def is_allowed(self, user_id) -> bool:
        """Count one request for user_id and report whether it is within the limit."""
        now = self._clock()
        entry = self._live_entry(user_id, now)
        if entry is None:
            entry = {"count": 0, "reset_at": now + self.window_seconds, "last_access": now}
            self._entries[user_id] = entry

        entry["count"] += 1
        entry["last_access"] = now
        return entry["count"] <= self.max_requests

    def remaining(self, user_id) -> int:
        entry = self._live_entry(user_id, self._clock())
        if entry is None:
            return self.max_requests
        return max(0, self.max_requests - entry["count"])

    def info(self, user_id) -> dict:
        """Return {"remaining", "reset_in", "limit"} without counting a request."""
        now = self._clock()
        entry = self._live_entry(user_id, now)
        if entry is None:
            return {"remaining": self.max_requests, "reset_in": self.window_seconds,
                    "limit": self.max_requests}
        return {
            "remaining": max(0, self.max_requests - entry["count"]),
            "reset_in": max(0.0, entry["reset_at"] - now),
            "limit": self.max_requests,
        }

    def cleanup(self, max_age: float = MAX_IDLE_SECONDS) -> int:
        """Drop entries idle for longer than max_age. Returns how many were dropped."""
        now = self._clock()
        stale = [uid for uid, e in self._entries.items() if now - e["last_access"] > max_age]
        for uid in stale:
            del self._entries[uid]
        return len(stale)

    def reset(self, user_id=None) -> None:
        """Forget one user, or everyone when user_id is None."""
        if user_id is None:
            self._entries.clear()
        else:
            self._entries.pop(user_id, None)
