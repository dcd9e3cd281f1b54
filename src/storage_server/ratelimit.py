"""Fixed-window, per-client request limiting.

Counters live in process memory. A counter is created on a client's first
request, reset wholesale when its window has passed, and removed by the
periodic `cleanup()` once expired. Check-and-increment is atomic under one
lock, so concurrent requests from the same client cannot both slip through.

Client identity trusts upstream headers in a fixed order. That is only safe
when a trusted proxy is the sole party able to set them.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

# Checked in order; the first non-empty one wins
CLIENT_ID_HEADERS = ("cf-connecting-ip", "x-real-ip", "x-forwarded-for")


@dataclass
class RateLimitCounter:
    count: int
    window_expires_at: float


def resolve_client_id(headers: Mapping[str, str], peer: str | None) -> str:
    """CDN header, then proxy real-IP, then first forwarded-for hop, then the peer."""
    for name in CLIENT_ID_HEADERS:
        value = headers.get(name)
        if value:
            first = value.split(",")[0].strip()
            if first:
                return first
    return peer or "unknown"


class FixedWindowRateLimiter:
    """Allow at most `max_requests` per client per `window_seconds`."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._counters: dict[str, RateLimitCounter] = {}
        self._lock = threading.Lock()

    def hit(self, client_id: str) -> bool:
        """Record one request. Returns False when it must be rejected."""
        now = self._clock()
        with self._lock:
            counter = self._counters.get(client_id)
            if counter is None or counter.window_expires_at <= now:
                self._counters[client_id] = RateLimitCounter(1, now + self.window_seconds)
                return True
            if counter.count < self.max_requests:
                counter.count += 1
                return True
            return False

    def cleanup(self) -> int:
        """Drop counters whose window has passed. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            stale = [cid for cid, c in self._counters.items() if c.window_expires_at <= now]
            for cid in stale:
                del self._counters[cid]
        return len(stale)

    def __len__(self) -> int:
        return len(self._counters)
