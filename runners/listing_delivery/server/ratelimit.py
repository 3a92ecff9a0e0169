from __future__ import annotations

import math
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }


class SlidingWindowLimiter:
    """Per-client sliding window: at most `max_requests` per `window` seconds."""

    def __init__(self, max_requests: int, window: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_requests = max(1, int(max_requests))
        self.window = float(window)
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()

    def check(self, client: str) -> RateDecision:
        now = self._clock()
        with self._lock:
            hits = self._hits.setdefault(client, deque())
            while hits and hits[0] <= now - self.window:
                hits.popleft()
            if len(hits) >= self.max_requests:
                reset = math.ceil(hits[0] + self.window - now)
                return RateDecision(False, self.max_requests, 0, max(1, reset))
            hits.append(now)
            reset = math.ceil(hits[0] + self.window - now)
            return RateDecision(True, self.max_requests, self.max_requests - len(hits), max(0, reset))


__all__ = ["RateDecision", "SlidingWindowLimiter"]
