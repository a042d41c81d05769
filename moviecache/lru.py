# moviecache/lru.py
from __future__ import annotations

import re
import time
from typing import Any, Dict, Optional, Tuple

from . import metrics


class LRUCache:
    """Fixed-capacity object cache evicting the least recently accessed entry.

    Entries never expire by age; only capacity pressure removes them. A hit
    refreshes the entry's access time but not its position in the map, and
    eviction scans for the oldest access time. Ties are broken arbitrarily.
    """

    def __init__(self, max_size: int = 100) -> None:
        """Initialize the cache.

        Args:
            max_size: Maximum number of entries kept.
        """
        self._max = max_size
        self._store: Dict[str, Tuple[Any, float]] = {}

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value and mark it recently used, or None on miss."""
        slot = self._store.get(key)
        if slot is None:
            return None
        value, _ = slot
        self._store[key] = (value, time.time())
        return value

    def set(self, key: str, value: Any) -> None:
        """Insert or replace an entry, evicting one LRU entry when over capacity."""
        self._store.pop(key, None)
        self._store[key] = (value, time.time())
        if len(self._store) > self._max:
            oldest = min(self._store, key=lambda k: self._store[k][1])
            del self._store[oldest]
            metrics.record_lru_eviction()

    def invalidate(self, pattern: str) -> int:
        """Drop keys matched by the regular expression ``pattern`` (``re.search``)."""
        regex = re.compile(pattern)
        doomed = [k for k in self._store if regex.search(k)]
        for k in doomed:
            del self._store[k]
        return len(doomed)

    def clear(self) -> None:
        self._store.clear()

    def stats(self) -> Dict[str, int]:
        return {"size": len(self._store), "max_size": self._max}
