"""Sliding-window request limiter for outbound API clients."""

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional, Tuple


@dataclass(frozen=True)
class RateLimit:
    """At most ``max_requests`` per ``window_seconds``, plus an optional per-second cap."""
    max_requests: int
    window_seconds: float = 1.0
    max_rps: Optional[int] = None


class WindowRateLimiter:
    """Blocks callers until a slot frees up in every configured window.

    Excess calls are delayed, never rejected.
    """

    def __init__(
        self,
        limit: RateLimit,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if limit.max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        self.limit = limit
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()

        self._windows: List[Tuple[int, float, Deque[float]]] = [
            (limit.max_requests, float(limit.window_seconds), deque()),
        ]
        if limit.max_rps:
            self._windows.append((int(limit.max_rps), 1.0, deque()))

    def _wait_time(self, now: float) -> float:
        wait_for = 0.0
        for max_requests, period, events in self._windows:
            while events and now - events[0] >= period:
                events.popleft()
            if len(events) >= max_requests:
                wait_for = max(wait_for, period - (now - events[0]))
        return wait_for

    def acquire(self) -> float:
        """Take a slot, sleeping as needed. Returns the total time waited."""
        waited = 0.0
        while True:
            with self._lock:
                now = self._clock()
                wait_for = self._wait_time(now)
                if wait_for <= 0:
                    for _, _, events in self._windows:
                        events.append(now)
                    return waited

            wait_for = max(0.001, wait_for)
            self._sleep(wait_for)
            waited += wait_for
