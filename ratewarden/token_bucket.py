"""Thread-safe token bucket."""

from __future__ import annotations

import threading
import time

_SECOND_NS = 1_000_000_000


class TokenBucket:
    """Bucket of ``capacity`` tokens refilled at ``refill_rate`` tokens per second."""

    def __init__(self, capacity: int, refill_rate: int) -> None:
        self._capacity = capacity if capacity > 0 else 1
        self._refill_rate = refill_rate if refill_rate > 0 else 1
        self._interval_ns = max(_SECOND_NS // self._refill_rate, 1)
        self._tokens = self._capacity
        self._last_refill = time.monotonic_ns()
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        """Maximum number of tokens the bucket holds."""
        return self._capacity

    @property
    def refill_rate(self) -> int:
        """Tokens added per second."""
        return self._refill_rate

    @property
    def refill_interval(self) -> float:
        """Seconds between two added tokens."""
        return self._interval_ns / _SECOND_NS

    def _refill(self) -> None:
        elapsed = time.monotonic_ns() - self._last_refill
        to_add = elapsed // self._interval_ns
        if to_add > 0:
            self._tokens = min(self._tokens + to_add, self._capacity)
            self._last_refill += to_add * self._interval_ns

    def allow(self) -> bool:
        """Take one token; return False if the bucket is empty."""
        with self._lock:
            self._refill()
            if self._tokens > 0:
                self._tokens -= 1
                return True
            return False

    def remaining(self) -> int:
        """Current number of tokens after refilling."""
        with self._lock:
            self._refill()
            return self._tokens

    def reset(self) -> None:
        """Fill the bucket and restart the refill clock."""
        with self._lock:
            self._tokens = self._capacity
            self._last_refill = time.monotonic_ns()