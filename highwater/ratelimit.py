from __future__ import annotations

import threading
import time
from typing import Callable


class TokenBucket:
    """Thread-safe token bucket shared by every caller of one upstream API."""

    def __init__(
        self,
        rate_per_second: float,
        *,
        burst: int | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.rate = max(float(rate_per_second), 0.0)
        self.capacity = float(max(int(burst if burst is not None else self.rate), 1))
        self._clock = clock
        self._sleep = sleep
        self._tokens = self.capacity
        self._updated = clock()
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.rate > 0

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(now - self._updated, 0.0)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._updated = now

    def acquire(self, tokens: float = 1.0) -> float:
        """Block until `tokens` are available; returns the seconds waited."""
        if not self.enabled:
            return 0.0

        waited = 0.0
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    return waited
                wait_for = (tokens - self._tokens) / self.rate
            self._sleep(wait_for)
            waited += wait_for

    def remaining(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens
