from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock

from fastapi import HTTPException, Request

from loginguard.security import client_ip


@dataclass(frozen=True)
class RateLimitSettings:
    enabled: bool = True
    requests: int = 50
    window_seconds: int = 900

    def __post_init__(self) -> None:
        if self.requests <= 0:
            raise ValueError("RATE_LIMIT_REQUESTS must be greater than 0.")
        if self.window_seconds <= 0:
            raise ValueError("RATE_LIMIT_WINDOW_SECONDS must be greater than 0.")


class InMemoryRateLimiter:
    """Sliding-window request counter keyed by scope and client address.

    Lives in the HTTP adapter only; the core keeps no in-process state.
    """

    def __init__(self, settings: RateLimitSettings, clock: Callable[[], float] = time.time) -> None:
        self._settings = settings
        self._clock = clock
        self._events: dict[str, deque[float]] = defaultdict(deque)
        self._last_sweep = clock()
        self._lock = Lock()

    @property
    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._events)

    def _prune(self, events: deque[float], now: float) -> None:
        window_start = now - self._settings.window_seconds
        while events and events[0] <= window_start:
            events.popleft()

    def _sweep(self, now: float) -> None:
        # Drops keys whose whole history has aged out; runs at most once per window.
        if now - self._last_sweep < self._settings.window_seconds:
            return
        self._last_sweep = now
        for key in list(self._events):
            events = self._events[key]
            self._prune(events, now)
            if not events:
                del self._events[key]

    def hit(self, key: str) -> int | None:
        """Consume one slot; returns the retry-after seconds when the key is over its limit."""
        now = self._clock()
        with self._lock:
            self._sweep(now)
            events = self._events[key]
            self._prune(events, now)
            if len(events) >= self._settings.requests:
                return max(1, math.ceil(self._settings.window_seconds - (now - events[0])))
            events.append(now)
            return None


def rate_limited(scope: str) -> Callable[[Request], None]:
    def enforce(request: Request) -> None:
        settings: RateLimitSettings | None = getattr(request.app.state, "rate_limit_settings", None)
        if not settings or not settings.enabled:
            return

        rate_limiter: InMemoryRateLimiter | None = getattr(request.app.state, "rate_limiter", None)
        if rate_limiter is None:
            raise HTTPException(status_code=500, detail="Rate limiter is not configured.")

        retry_after = rate_limiter.hit(f"{scope}:{client_ip(request)}")
        if retry_after is not None:
            raise HTTPException(
                status_code=429,
                detail=f"Too many {scope} attempts, please try again later.",
                headers={"Retry-After": str(retry_after)},
            )

    return enforce
