"""Injected expiring caches for tutor candidate snapshots."""

import time
from threading import Lock
from typing import Any, Callable, Dict, Hashable, Optional, Tuple


class TTLCache:
    """Thread-safe time-to-live cache with explicit invalidation.

    Entries expire ``ttl_seconds`` after they were stored. Owners invalidate
    keys when the underlying document changes instead of waiting for expiry.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_size: int = 10000,
        clock: Optional[Callable[[], float]] = None,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._ttl = float(ttl_seconds)
        self._max_size = max_size
        self._clock = clock or time.monotonic
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}
        self._lock = Lock()

    def get(self, key: Hashable) -> Optional[Any]:
        """Return the cached value, or None when missing or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at >= self._ttl:
                self._entries.pop(key, None)
                return None
            return value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_size:
                # Evict the oldest entry
                oldest = min(self._entries, key=lambda k: self._entries[k][0])
                self._entries.pop(oldest, None)
            self._entries[key] = (self._clock(), value)

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
