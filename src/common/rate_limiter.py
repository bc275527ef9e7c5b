from __future__ import annotations

import threading
import time
from dataclasses import dataclass


class RateLimitError(RuntimeError):
    """Raised when a non-blocking acquire would exceed the rate limit."""


@dataclass
class _BucketConfig:
    capacity: int
    refill: float
    per_seconds: float


class TokenBucketRateLimiter:
    """
    A simple thread-safe token-bucket rate limiter.

    - Holds at most `capacity` tokens and starts full.
    - Regains `refill` tokens every `per_seconds`, continuously.
    - If `blocking=True`, `acquire` waits until enough tokens are available.
    - If `blocking=False`, raises `RateLimitError` when they aren't.

    Shared by the foreground request path and background backoff tasks of a
    single process. Not a distributed limiter.
    """

    def __init__(
        self,
        capacity: int,
        refill: float,
        per_seconds: float = 1.0,
        *,
        clock=time.monotonic,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        if refill <= 0:
            raise ValueError("refill must be > 0")
        if per_seconds <= 0:
            raise ValueError("per_seconds must be > 0")
        self._cfg = _BucketConfig(capacity=capacity, refill=refill, per_seconds=per_seconds)
        self._lock = threading.Lock()
        self._clock = clock
        self._tokens = float(capacity)
        self._updated = clock()

    @property
    def available(self) -> float:
        with self._lock:
            self._refill(self._clock())
            return self._tokens

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._updated)
        rate = self._cfg.refill / self._cfg.per_seconds
        self._tokens = min(float(self._cfg.capacity), self._tokens + elapsed * rate)
        self._updated = now

    def _delay_for(self, n: int) -> float:
        """Return seconds until `n` tokens are available (>= 0)."""
        missing = n - self._tokens
        if missing <= 0:
            return 0.0
        return missing * self._cfg.per_seconds / self._cfg.refill

    def acquire(self, n: int = 1, *, blocking: bool = True) -> None:
        """
        Take `n` tokens from the bucket.

        - If `blocking`, sleeps until they are available.
        - If not, raises RateLimitError when they are not immediately available.
        """
        if n > self._cfg.capacity:
            raise ValueError("cannot acquire more tokens than the bucket capacity")
        while True:
            with self._lock:
                self._refill(self._clock())
                delay = self._delay_for(n)
                if delay == 0.0:
                    self._tokens -= n
                    return
            if not blocking:
                raise RateLimitError("rate limit exceeded; not enough tokens")
            time.sleep(min(delay, 1.0))  # sleep in small chunks for responsiveness
