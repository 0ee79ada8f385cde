"""Small TTL cache with an injected clock."""

import threading
from collections import OrderedDict
from typing import Any, Generic, Hashable, Optional, Tuple, TypeVar

from ..core.clock import Clock

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Entries expire ttl_seconds after insertion; the oldest is evicted when full."""

    def __init__(self, clock: Clock, ttl_seconds: float = 300, max_entries: int = 128):
        self.clock = clock
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._entries: "OrderedDict[Hashable, Tuple[V, float]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def _now(self) -> float:
        return self.clock.now().timestamp()

    def get(self, key: Hashable) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            value, expires_at = entry
            if self._now() >= expires_at:
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return value

    def put(self, key: Hashable, value: V) -> None:
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            self._entries[key] = (value, self._now() + self.ttl_seconds)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Any) -> bool:
        return self.get(key) is not None
