"""
Rate limiting for the UniKYC HTTP surface.

Sliding window limiter with per-key tracking. Keys are usually
"<endpoint>:<client id>" so one noisy client cannot starve others.
"""

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: Optional[float] = None


class RateLimiter:
    """
    Sliding window rate limiter.

    Thread-safe; each key keeps a deque of hit timestamps inside the window.
    """

    def __init__(self, rpm: int, window_seconds: int = 60, timer: Callable[[], float] = time.monotonic):
        """
        Args:
            rpm: Maximum requests per window
            window_seconds: Window size in seconds (default 60)
            timer: time source, overridable in tests
        """
        self._limit = max(1, rpm)
        self._window = window_seconds
        self._timer = timer
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.RLock()

    @property
    def limit(self) -> int:
        return self._limit

    def allow(self, key: str) -> bool:
        return self.check(key).allowed

    def check(self, key: str) -> RateLimitResult:
        """Record a hit for ``key`` if under the limit and report the outcome."""
        now = self._timer()
        window_start = now - self._window

        with self._lock:
            q = self._hits[key]
            while q and q[0] < window_start:
                q.popleft()

            count = len(q)
            reset_at = (q[0] + self._window) if q else (now + self._window)

            if count >= self._limit:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after=max(0.0, q[0] + self._window - now),
                )

            q.append(now)
            return RateLimitResult(allowed=True, remaining=self._limit - count - 1, reset_at=reset_at)

    def reset(self, key: Optional[str] = None) -> None:
        """Reset counters for one key, or all keys."""
        with self._lock:
            if key:
                self._hits.pop(key, None)
            else:
                self._hits.clear()

    def cleanup_expired(self) -> int:
        """Drop expired hits and empty keys. Returns the number of hits removed."""
        window_start = self._timer() - self._window
        removed = 0
        with self._lock:
            for key in list(self._hits):
                q = self._hits[key]
                while q and q[0] < window_start:
                    q.popleft()
                    removed += 1
                if not q:
                    del self._hits[key]
        return removed


def extract_client_id(headers) -> str:
    """Client identifier for rate limiting, from request headers."""
    scheme, _, token = headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return f"session:{token.strip()[:12]}"
    forwarded = headers.get("x-forwarded-for", "")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    return "anonymous"
