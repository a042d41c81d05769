"""stale_while_revalidate, batch_requests and prefetch."""

from __future__ import annotations

import asyncio
import logging

import pytest
from prometheus_client import REGISTRY

from moviecache.cache import BatchRequest, batch_requests, prefetch, stale_while_revalidate


async def _drain(n: int = 10):
    for _ in range(n):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_swr_returns_stale_value_without_waiting_and_refreshes(cache, clock):
    """Past stale_time (80% of ttl) the cached value comes back at once and a refresh runs."""
    cache.set("genres", {"v": 1}, 10)
    clock["t"] += 9  # stale (> 8s) but not expired (<= 10s)

    gate = asyncio.Event()
    calls = {"n": 0}

    async def fetcher():
        calls["n"] += 1
        await gate.wait()
        return {"v": 2}

    value = await stale_while_revalidate(cache, "genres", fetcher, 10)

    assert value == {"v": 1}
    assert cache.is_pending("genres")

    await _drain()
    assert calls["n"] == 1
    # still blocked upstream, old value still served
    assert cache.get("genres") == {"v": 1}

    gate.set()
    await _drain()
    assert cache.get("genres") == {"v": 2}
    assert not cache.is_pending("genres")


@pytest.mark.asyncio
async def test_swr_fresh_value_does_not_refresh(cache, clock):
    cache.set("genres", ["a"], 10)
    clock["t"] += 5

    async def fetcher():
        raise AssertionError("should not be called")

    assert await stale_while_revalidate(cache, "genres", fetcher, 10) == ["a"]
    await _drain()
    assert not cache.is_pending("genres")


@pytest.mark.asyncio
async def test_swr_custom_stale_time(cache, clock):
    calls = {"n": 0}

    async def fetcher():
        calls["n"] += 1
        return "new"

    cache.set("k", "old", 100)
    clock["t"] += 3

    assert await stale_while_revalidate(cache, "k", fetcher, 100, stale_time=2) == "old"
    await _drain()
    assert calls["n"] == 1
    assert cache.get("k") == "new"


@pytest.mark.asyncio
async def test_swr_miss_fetches_and_caches(cache):
    calls = {"n": 0}

    async def fetcher():
        calls["n"] += 1
        return {"genres": []}

    assert await stale_while_revalidate(cache, "genres", fetcher, 60) == {"genres": []}
    assert await stale_while_revalidate(cache, "genres", fetcher, 60) == {"genres": []}
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_swr_miss_propagates_fetch_failure(cache):
    async def fetcher():
        raise RuntimeError("down")

    with pytest.raises(RuntimeError, match="down"):
        await stale_while_revalidate(cache, "genres", fetcher, 60)


@pytest.mark.asyncio
async def test_swr_background_failure_is_logged_and_keeps_old_value(cache, clock, caplog):
    cache.set("languages", ["en"], 10)
    clock["t"] += 9

    async def fetcher():
        raise RuntimeError("tmdb down")

    with caplog.at_level(logging.WARNING, logger="moviecache.cache"):
        value = await stale_while_revalidate(cache, "languages", fetcher, 10)
        await _drain()

    assert value == ["en"]
    assert cache.get("languages") == ["en"]
    assert "cache.revalidate_failed key=languages" in caplog.text


@pytest.mark.asyncio
async def test_swr_concurrent_stale_reads_share_one_refresh(cache, clock):
    cache.set("k", "old", 10)
    clock["t"] += 9
    gate = asyncio.Event()
    calls = {"n": 0}

    async def fetcher():
        calls["n"] += 1
        await gate.wait()
        return "new"

    values = await asyncio.gather(
        *[stale_while_revalidate(cache, "k", fetcher, 10) for _ in range(5)]
    )
    gate.set()
    await _drain()

    assert values == ["old"] * 5
    assert calls["n"] == 1
    assert cache.get("k") == "new"


@pytest.mark.asyncio
async def test_batch_requests_preserves_input_order(cache):
    def make(value, delay):
        async def fetcher():
            await asyncio.sleep(delay)
            return value

        return fetcher

    results = await batch_requests(
        cache,
        [
            BatchRequest("a", make("A", 0.03), 60),
            BatchRequest("b", make("B", 0.0), 60),
            BatchRequest("c", make("C", 0.01), 60),
        ],
    )
    assert results == ["A", "B", "C"]
    assert cache.stats()["size"] == 3


@pytest.mark.asyncio
async def test_batch_requests_rejects_when_any_fetch_fails(cache):
    async def ok():
        return "ok"

    async def bad():
        raise ValueError("nope")

    with pytest.raises(ValueError, match="nope"):
        await batch_requests(
            cache,
            [
                BatchRequest("a", ok, 60),
                BatchRequest("b", bad, 60),
                BatchRequest("c", ok, 60),
            ],
        )
    assert cache.get("b") is None


@pytest.mark.asyncio
async def test_batch_requests_coalesces_duplicate_keys(cache):
    calls = {"n": 0}

    async def fetcher():
        calls["n"] += 1
        await asyncio.sleep(0.01)
        return "same"

    results = await batch_requests(cache, [("k", fetcher, 60)] * 3)
    assert results == ["same"] * 3
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_prefetch_warms_cache(cache, caplog):
    async def genres():
        return {"genres": []}

    async def languages():
        return []

    with caplog.at_level(logging.INFO, logger="moviecache.cache"):
        ok = await prefetch(
            cache,
            [BatchRequest("genres", genres, 60), BatchRequest("languages", languages, 60)],
        )

    assert ok is True
    assert sorted(cache.stats()["entries"]) == ["genres", "languages"]
    assert "cache.prefetch complete requests=2" in caplog.text


@pytest.mark.asyncio
async def test_prefetch_failure_is_logged_not_raised(cache, caplog):
    async def bad():
        raise RuntimeError("offline")

    with caplog.at_level(logging.WARNING, logger="moviecache.cache"):
        ok = await prefetch(cache, [BatchRequest("genres", bad, 60)])

    assert ok is False
    assert "cache.prefetch_failed" in caplog.text


def _errors(op):
    return REGISTRY.get_sample_value("cache_errors_total", {"cache": "response", "op": op}) or 0.0


@pytest.mark.asyncio
async def test_swr_background_failure_is_counted_once(cache, clock):
    cache.set("genres", ["a"], 10)
    clock["t"] += 9
    fetch_before, revalidate_before = _errors("fetch"), _errors("revalidate")

    async def fetcher():
        raise RuntimeError("tmdb down")

    await stale_while_revalidate(cache, "genres", fetcher, 10)
    await _drain()

    assert _errors("revalidate") == revalidate_before + 1
    assert _errors("fetch") == fetch_before
