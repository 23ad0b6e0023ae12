import threading
import time
from dataclasses import dataclass
from typing import Dict, Tuple

from fastapi import Request

from .errors import RateLimitExceeded


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float


class RateLimiter:
    """Fixed-window request counter keyed by client identifier."""

    def __init__(self, max_requests: int, window_seconds: float):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._hits: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()
        self._next_prune = 0.0

    @classmethod
    def parse(cls, value: str):
        """Build a limiter from ``"<requests>/<seconds>"``."""
        count, _, window = value.partition("/")
        return cls(int(count), float(window or 60))

    def check(self, key: str) -> RateLimitResult:
        now = time.monotonic()
        with self._lock:
            if now >= self._next_prune:
                self._prune(now)
            count, reset_at = self._hits.get(key, (0, 0.0))
            if now > reset_at:
                count, reset_at = 0, now + self.window_seconds
            if count >= self.max_requests:
                return RateLimitResult(False, 0, reset_at)
            count += 1
            self._hits[key] = (count, reset_at)
            return RateLimitResult(True, self.max_requests - count, reset_at)

    def _prune(self, now: float):
        """Drop expired windows; called with the lock held, at most once per window."""
        self._hits = {k: v for k, v in self._hits.items() if v[1] >= now}
        self._next_prune = now + self.window_seconds

    @property
    def tracked_keys(self) -> int:
        return len(self._hits)

    def reset(self, key: str | None = None):
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("x-real-ip") or (request.client.host if request.client else "unknown")


def rate_limited(name: str, message: str = "Rate limit exceeded"):
    """Dependency factory enforcing the named limiter of the app context."""

    def dependency(request: Request):
        limiter = request.app.state.context.rate_limiters[name]
        result = limiter.check(client_ip(request))
        if not result.allowed:
            raise RateLimitExceeded(message)

    return dependency
