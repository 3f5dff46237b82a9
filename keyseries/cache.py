"""Key/value cache with per-entry TTL and LRU eviction."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

_MISSING = object()


class TTLCache:
    """Thread-safe cache whose entries expire ``ttl_seconds`` after being set.

    At most ``max_entries`` are kept; the least recently used entry is evicted
    first. A TTL of 0 or less disables expiry.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 16,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries}")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[Any, tuple[float, Any]] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired()
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def get(self, key: Any, default: Any = None) -> Any:
        """Return the live value for *key*, or *default* if missing/expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            stored_at, value = entry
            if self._expired(stored_at):
                del self._entries[key]
                return default
            self._entries.move_to_end(key)
            return value

    def set(self, key: Any, value: Any) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, key: Any) -> bool:
        """Drop *key*. Returns True if it was present."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> list[Any]:
        with self._lock:
            self._purge_expired()
            return list(self._entries)

    def _expired(self, stored_at: float) -> bool:
        if self.ttl_seconds <= 0:
            return False
        return self._clock() - stored_at >= self.ttl_seconds

    def _purge_expired(self) -> None:
        for key in [k for k, (t, _) in self._entries.items() if self._expired(t)]:
            del self._entries[key]
