"""In-process counter store with the same behaviour as the memcache client."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass

from ratewarden.memcache_client import CounterStore, MemcacheError

_UINT64_MASK = 2**64 - 1


@dataclass
class _Item:
    value: int
    expires_at: float | None

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now > self.expires_at


def _expiry(expiration: float) -> float | None:
    return time.monotonic() + expiration if expiration > 0 else None


class MockMemcacheClient(CounterStore):
    """Thread-safe in-memory counter store, usable in place of a memcache client."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, _Item] = {}
        self._closed = False

    def _ensure_open(self) -> None:
        if self._closed:
            raise MemcacheError("client is closed")

    def get(self, key: str) -> int:
        with self._lock:
            self._ensure_open()
            item = self._data.get(key)
            if item is None or item.expired(time.monotonic()):
                return 0
            return item.value

    def set(self, key: str, value: int, expiration: float) -> None:
        with self._lock:
            self._ensure_open()
            self._data[key] = _Item(value, _expiry(expiration))

    def increment_with_expiration(self, key: str, delta: int, expiration: float) -> int:
        with self._lock:
            self._ensure_open()
            item = self._data.get(key)
            if item is None or item.expired(time.monotonic()):
                self._data[key] = _Item(delta, _expiry(expiration))
                return delta
            item.value = (item.value + delta) & _UINT64_MASK
            return item.value

    def delete(self, key: str) -> None:
        with self._lock:
            self._ensure_open()
            self._data.pop(key, None)

    def health_check(self) -> None:
        with self._lock:
            self._ensure_open()

    def close(self) -> None:
        with self._lock:
            self._closed = True

    def clear(self) -> None:
        """Drop every stored counter."""
        with self._lock:
            self._data = {}