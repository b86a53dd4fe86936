"""In-process cache for progress projections."""

import time
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple

CacheKey = Tuple[str, str]


class ProjectionCache:
    """Thread-safe LRU cache of projections keyed by (user_id, enrollment_id).

    Entries expire after ``ttl_seconds``; a TTL of zero disables caching.
    """

    def __init__(
        self,
        ttl_seconds: float = 60.0,
        max_size: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must be >= 0")
        self._cache: Dict[CacheKey, Tuple[float, Any]] = {}
        self._access_order: List[CacheKey] = []
        self._ttl = float(ttl_seconds)
        self._max_size = max_size
        self._clock = clock
        self._lock = Lock()

    @property
    def enabled(self) -> bool:
        return self._ttl > 0

    def add(self, user_id: str, enrollment_id: str, value: Any) -> None:
        if not self.enabled:
            return
        key = (user_id, enrollment_id)
        with self._lock:
            if key in self._cache:
                self._access_order.remove(key)
            elif len(self._cache) >= self._max_size:
                # Evict least recently used
                lru_key = self._access_order.pop(0)
                self._cache.pop(lru_key, None)
            self._cache[key] = (self._clock() + self._ttl, value)
            self._access_order.append(key)

    def get(self, user_id: str, enrollment_id: str) -> Optional[Any]:
        key = (user_id, enrollment_id)
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                self._drop(key)
                return None
            self._access_order.remove(key)
            self._access_order.append(key)
            return value

    def invalidate(self, enrollment_id: str) -> None:
        """Drop every cached projection of ``enrollment_id``."""
        with self._lock:
            for key in [k for k in self._cache if k[1] == enrollment_id]:
                self._drop(key)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._access_order.clear()

    def __len__(self) -> int:
        return len(self._cache)

    def _drop(self, key: CacheKey) -> None:
        self._cache.pop(key, None)
        if key in self._access_order:
            self._access_order.remove(key)
