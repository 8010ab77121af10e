"""
In-process caches owned by the collector service.

These live for as long as the Lambda container does and are not shared
across containers. Each get/set is atomic under a lock, but a caller's
get -> mutate -> set sequence is not: two concurrent requests for the same
key can lose one update (last write wins).
"""

import threading
import time
from collections import OrderedDict
from typing import Callable, Generic, Optional, Set, Tuple, TypeVar

V = TypeVar("V")

Clock = Callable[[], float]


class TTLCache(Generic[V]):
    """Key/value cache whose entries expire after a per-entry TTL."""

    def __init__(self, default_ttl: float, clock: Clock = time.monotonic, max_entries: int = 10000):
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[V, float]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[V]:
        """Return the cached value, or None (evicting the entry) once its TTL has passed."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires = entry
            if expires <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: V, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class ConversionTracker:
    """Remembers which goals already converted in a session."""

    def __init__(self, max_sessions: int = 1000):
        self.max_sessions = max_sessions
        self._converted: "OrderedDict[str, Set[str]]" = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def _key(site_id: str, session_id: str) -> str:
        return f"{site_id}:{session_id}"

    def has_converted(self, site_id: str, session_id: str, goal_id: str) -> bool:
        with self._lock:
            return goal_id in self._converted.get(self._key(site_id, session_id), ())

    def mark_converted(self, site_id: str, session_id: str, goal_id: str) -> None:
        key = self._key(site_id, session_id)
        with self._lock:
            self._converted.setdefault(key, set()).add(goal_id)
            self._converted.move_to_end(key)
            # Drop the oldest sessions first
            while len(self._converted) > self.max_sessions:
                self._converted.popitem(last=False)

    def converted_goals(self, site_id: str, session_id: str) -> Set[str]:
        with self._lock:
            return set(self._converted.get(self._key(site_id, session_id), ()))

    def clear(self) -> None:
        with self._lock:
            self._converted.clear()


def session_cache_key(site_id: str, session_id: str) -> str:
    return f"{site_id}:{session_id}"

