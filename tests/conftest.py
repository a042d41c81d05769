# --- keep this shim at the very top ---
import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
# --------------------------------------

import pytest
import respx
from fastapi.testclient import TestClient

from moviecache import cache as cache_mod
from moviecache.cache import CacheManager
from moviecache.tmdb import BASE_URL

import moviecache.main as main


@pytest.fixture
def clock(monkeypatch):
    """Controlled wall clock for the TTL and LRU stores.

    Both modules read ``time.time``; bump ``clock["t"]`` to move time forward.
    """
    now = {"t": 1_000.0}
    monkeypatch.setattr(cache_mod.time, "time", lambda: now["t"])
    return now


@pytest.fixture
def cache():
    return CacheManager()


@pytest.fixture
def tmdb_api():
    """respx router scoped to the TMDB base URL; unmatched requests fail the test."""
    with respx.mock(base_url=BASE_URL, assert_all_called=False) as router:
        yield router


@pytest.fixture
def client(monkeypatch, tmdb_api):
    """TestClient running the real lifespan (fresh caches per test) against mocked TMDB."""
    monkeypatch.setattr(main.settings, "TMDB_API_KEY", "test-key")
    monkeypatch.setattr(main.settings, "TMDB_BASE_URL", BASE_URL)
    monkeypatch.setattr(main.settings, "MAX_RETRIES", 2)
    monkeypatch.setattr(main.settings, "PREFETCH_ON_STARTUP", False)
    with TestClient(main.app) as c:
        yield c
