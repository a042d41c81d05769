# moviecache/cache.py
"""In-process TTL response cache with request coalescing.

A ``CacheManager`` keeps ``CacheEntry`` records keyed by string and expires them
lazily on read (there is no background sweeper). ``get_or_fetch`` coalesces
concurrent misses for the same key into a single underlying fetch, so a burst
of identical requests costs one upstream round-trip.

On top of the manager sit three helpers that take the cache explicitly:

- ``stale_while_revalidate``: serve whatever is cached, refresh it in the
  background once it is older than ``stale_time``.
- ``batch_requests``: fan out several ``get_or_fetch`` calls, all-or-nothing.
- ``prefetch``: best-effort warmup built on ``batch_requests``.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, NamedTuple, Optional

from . import metrics

log = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Any]]

# Default TTLs (seconds) per resource family
CACHE_TIMES: Dict[str, int] = {
    "genres": 86400,
    "languages": 86400,
    "movie": 3600,
    "movie_list": 3600,
    "search": 300,
    "trending": 3600,
    "top_rated": 3600,
    "upcoming": 3600,
    "now_playing": 3600,
}

# Multipliers keyed by the client's effective connection type (ECT hint)
_ADAPTIVE_TTL_FACTORS: Dict[str, float] = {
    "4g": 1.0,
    "3g": 1.5,
    "2g": 2.0,
    "slow-2g": 2.0,
}


class CacheEntry(NamedTuple):
    """A cached value plus the wall-clock time it was written and its TTL."""

    data: Any
    timestamp: float
    ttl: float

    def age(self, now: float) -> float:
        return now - self.timestamp

    def is_valid(self, now: float) -> bool:
        return self.age(now) <= self.ttl


class BatchRequest(NamedTuple):
    key: str
    fetcher: Fetcher
    ttl: float


class CacheManager:
    """TTL store plus a per-key table of in-flight fetches."""

    def __init__(self) -> None:
        self._store: Dict[str, CacheEntry] = {}
        self._pending: Dict[str, "asyncio.Task[Any]"] = {}
        self._hits = 0
        self._misses = 0

    # ------------------------------------------------------------------
    # TTL store
    # ------------------------------------------------------------------

    def entry(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for ``key`` if still valid; evict and return None otherwise."""
        entry = self._store.get(key)
        if entry is None:
            return None
        if not entry.is_valid(time.time()):
            self._store.pop(key, None)
            log.debug("cache.expired key=%s ttl=%s", key, entry.ttl)
            return None
        return entry

    def get(self, key: str) -> Any:
        entry = self.entry(key)
        return None if entry is None else entry.data

    def set(self, key: str, data: Any, ttl: float) -> None:
        self._store[key] = CacheEntry(data, time.time(), ttl)

    def invalidate(self, pattern: str) -> int:
        """Delete every key matched by the regular expression ``pattern``.

        Matching uses ``re.search``, so anchor with ``^`` for prefix busting.
        A malformed pattern raises ``re.error``.

        Returns:
            Number of entries removed.
        """
        regex = re.compile(pattern)
        doomed = [k for k in self._store if regex.search(k)]
        for k in doomed:
            del self._store[k]
        log.info("cache.invalidate pattern=%r removed=%d", pattern, len(doomed))
        return len(doomed)

    def clear(self) -> None:
        """Drop all entries and forget in-flight fetches (they still run to completion)."""
        self._store.clear()
        self._pending.clear()
        metrics.observe_pending(0)

    def stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._store),
            "entries": list(self._store),
            "hits": self._hits,
            "misses": self._misses,
            "pending": len(self._pending),
        }

    # ------------------------------------------------------------------
    # Coalescing
    # ------------------------------------------------------------------

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    async def get_or_fetch(self, key: str, fetcher: Fetcher, ttl: float) -> Any:
        """Return the cached value for ``key`` or fetch it exactly once.

        Concurrent callers for the same key share one call to ``fetcher``
        and receive the same value or the same exception. Failures are never
        cached. Cancelling one waiter does not cancel the shared fetch.
        """
        cached = self.get(key)
        if cached is not None:
            self._hits += 1
            metrics.record_cache_hit()
            return cached

        task = self._pending.get(key)
        if task is not None:
            metrics.record_cache_join()
            log.debug("cache.join key=%s", key)
            return await asyncio.shield(task)

        self._misses += 1
        metrics.record_cache_miss()
        task = self._start_fill(key, fetcher, ttl)
        return await asyncio.shield(task)

    def revalidate(self, key: str, fetcher: Fetcher, ttl: float) -> "asyncio.Task[Any]":
        """Refresh ``key`` in the background; reuse the in-flight fetch if there is one.

        Failures are logged and counted, never raised.
        """
        task = self._pending.get(key)
        if task is not None:
            return task
        task = self._start_fill(key, fetcher, ttl, op="revalidate")
        task.add_done_callback(lambda t: _log_background_failure(key, t))
        return task

    def _start_fill(
        self, key: str, fetcher: Fetcher, ttl: float, op: str = "fetch"
    ) -> "asyncio.Task[Any]":
        task = asyncio.ensure_future(self._fill(key, fetcher, ttl, op))
        # every waiter may be gone by the time the fetch fails
        task.add_done_callback(_consume_exception)
        self._pending[key] = task
        metrics.record_cache_fetch()
        metrics.observe_pending(len(self._pending))
        return task

    async def _fill(self, key: str, fetcher: Fetcher, ttl: float, op: str) -> Any:
        me = asyncio.current_task()
        try:
            data = await fetcher()
            self.set(key, data, ttl)
            log.debug("cache.fill key=%s ttl=%s", key, ttl)
            return data
        except Exception as exc:
            metrics.record_cache_error(op)
            log.debug("cache.fetch_failed key=%s op=%s error=%r", key, op, exc)
            raise
        finally:
            # clear() may have dropped us and a newer fetch may own the slot
            if self._pending.get(key) is me:
                del self._pending[key]
            metrics.observe_pending(len(self._pending))


def _consume_exception(task: "asyncio.Task[Any]") -> None:
    if not task.cancelled():
        task.exception()


def _log_background_failure(key: str, task: "asyncio.Task[Any]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.warning("cache.revalidate_failed key=%s error=%r", key, exc)


async def stale_while_revalidate(
    cache: CacheManager,
    key: str,
    fetcher: Fetcher,
    ttl: float,
    stale_time: float | None = None,
) -> Any:
    """Serve cached data immediately; refresh it in the background once stale.

    Args:
        cache: Cache to read from and write to.
        key: Cache key.
        fetcher: Zero-argument callable returning an awaitable payload.
        ttl: Time-to-live in seconds for stored values.
        stale_time: Age in seconds past which a background refresh starts.
            Defaults to 80% of ``ttl``.

    Returns:
        The cached value if any, otherwise a freshly fetched one.
    """
    if stale_time is None:
        stale_time = ttl * 0.8

    entry = cache.entry(key)
    if entry is not None and entry.data is not None:
        age = entry.age(time.time())
        if age > stale_time:
            log.debug("cache.stale key=%s age=%.3fs stale_time=%ss", key, age, stale_time)
            cache.revalidate(key, fetcher, ttl)
        return entry.data

    return await cache.get_or_fetch(key, fetcher, ttl)


async def batch_requests(cache: CacheManager, requests: Iterable[BatchRequest]) -> List[Any]:
    """Run ``get_or_fetch`` for every request concurrently.

    Results come back in input order. The first failure propagates and no
    partial list is returned; fetches already started keep running and may
    still populate the cache.
    """
    coros = [cache.get_or_fetch(key, fetcher, ttl) for key, fetcher, ttl in requests]
    return list(await asyncio.gather(*coros))


async def prefetch(cache: CacheManager, requests: Iterable[BatchRequest]) -> bool:
    """Warm the cache; log instead of raising. Returns True on full success."""
    reqs = list(requests)
    t0 = time.perf_counter()
    try:
        await batch_requests(cache, reqs)
    except Exception as exc:
        metrics.record_cache_error("prefetch")
        log.warning("cache.prefetch_failed requests=%d error=%r", len(reqs), exc)
        return False
    log.info(
        "cache.prefetch complete requests=%d elapsed=%.3fs",
        len(reqs),
        time.perf_counter() - t0,
    )
    return True


def adaptive_cache_ttl(base_ttl: int, effective_type: str | None = None) -> int:
    """Stretch a TTL for slow client connections.

    ``effective_type`` is the Network Information API value (``4g``, ``3g``,
    ``2g``, ``slow-2g``). Unknown or missing values keep ``base_ttl``.
    """
    factor = _ADAPTIVE_TTL_FACTORS.get((effective_type or "").strip().lower(), 1.0)
    if factor == 1.0:
        return base_ttl
    return math.ceil(base_ttl * factor)
