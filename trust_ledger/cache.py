import threading
from datetime import datetime, timedelta
from typing import Callable, Generic, Hashable, Optional, TypeVar

from .storage import utcnow

V = TypeVar("V")


class ExpiringCache(Generic[V]):
    """
    Keyed cache whose entries expire `ttl` after insertion.

    Expired entries are dropped lazily on read and in bulk by `sweep()`.
    The clock is injectable so tests can move time forward.
    """

    def __init__(self, ttl: timedelta, clock: Optional[Callable[[], datetime]] = None):
        self.ttl = ttl
        self._now = clock or utcnow
        self._lock = threading.Lock()
        self._entries: dict[Hashable, tuple[V, datetime]] = {}

    def set(self, key: Hashable, value: V) -> None:
        with self._lock:
            self._entries[key] = (value, self._now())

    def get(self, key: Hashable) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, inserted_at = entry
            if self._expired(inserted_at):
                del self._entries[key]
                return None
            return value

    def pop(self, key: Hashable) -> Optional[V]:
        """Remove and return a live entry (one-time values such as challenges)."""
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None or self._expired(entry[1]):
            return None
        return entry[0]

    def sweep(self) -> int:
        """Evict every expired entry; returns how many were dropped."""
        with self._lock:
            stale = [k for k, (_, inserted_at) in self._entries.items() if self._expired(inserted_at)]
            for key in stale:
                del self._entries[key]
            return len(stale)

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, inserted_at: datetime) -> bool:
        return self._now() - inserted_at >= self.ttl
