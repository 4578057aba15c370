import threading
import time
from collections import OrderedDict
from typing import Any, Callable


class TTLCache:
    """
    Bounded in-memory cache with per-entry expiry.

    Entries are kept in insertion order; when the cache is full the oldest
    entry is evicted. Re-setting a key counts as a fresh insertion. Expired
    entries are dropped on read.
    """

    def __init__(
        self,
        max_size: int,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._store: "OrderedDict[str, tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self.misses += 1
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._store[key]
                self.misses += 1
                return None
            self.hits += 1
            return value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._store.pop(key, None)
            self._store[key] = (self._clock() + self.ttl_seconds, value)
            while len(self._store) > self.max_size:
                self._store.popitem(last=False)

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        with self._lock:
            now = self._clock()
            stale = [k for k, (expires_at, _) in self._store.items() if now >= expires_at]
            for key in stale:
                del self._store[key]
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)
