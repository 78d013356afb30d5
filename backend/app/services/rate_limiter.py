"""In-memory sliding-window rate limiting for the credential endpoints."""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Iterable, Optional, Tuple

from app.config import settings
from app.core.exceptions import RateLimitExceededError


@dataclass(frozen=True)
class RateLimitRule:
    limit: int
    window_seconds: int


LOGIN_RULES: Tuple[RateLimitRule, ...] = (
    RateLimitRule(settings.LOGIN_RATE_LIMIT_PER_MINUTE, 60),
    RateLimitRule(settings.LOGIN_RATE_LIMIT_PER_HOUR, 3600),
)
DEFAULT_RULES: Tuple[RateLimitRule, ...] = (
    RateLimitRule(settings.RATE_LIMIT_PER_MINUTE, 60),
    RateLimitRule(settings.RATE_LIMIT_PER_HOUR, 3600),
)


class SlidingWindowRateLimiter:
    """Single-node limiter; each key keeps the timestamps of its recent hits."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: Dict[str, Deque[float]] = {}

    def _prune(self, hits: Deque[float], cutoff: float) -> None:
        while hits and hits[0] <= cutoff:
            hits.popleft()

    def check(self, key: str, rules: Iterable[RateLimitRule]) -> None:
        """
        Record a hit for `key` or refuse it.

        Raises:
            RateLimitExceededError: Any rule's window is full; `retry_after` is
                the number of seconds until its oldest hit leaves the window
        """
        rules = tuple(rules)
        longest = max((rule.window_seconds for rule in rules), default=0)
        now = self._clock()

        with self._lock:
            hits = self._hits.setdefault(key, deque())
            self._prune(hits, now - longest)
            for rule in rules:
                in_window = [t for t in hits if t > now - rule.window_seconds]
                if len(in_window) >= rule.limit:
                    retry_after = max(1, math.ceil(in_window[0] + rule.window_seconds - now))
                    raise RateLimitExceededError(retry_after=retry_after)
            hits.append(now)

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)


rate_limiter = SlidingWindowRateLimiter()
