"""Key builders, default TTL table and connection-adaptive TTLs."""

import pytest

from moviecache import cache_keys
from moviecache.cache import CACHE_TIMES, adaptive_cache_ttl


def test_key_formats():
    assert cache_keys.genre() == "genres"
    assert cache_keys.language() == "languages"
    assert cache_keys.movie(550) == "movie-550"
    assert cache_keys.movie_part(550, "credits") == "movie-550-credits"
    assert cache_keys.movie_list("popular") == "movies-popular-1"
    assert cache_keys.movie_list("top_rated", 3) == "movies-top_rated-3"
    assert cache_keys.search("alien", 2) == "search-alien-2"
    assert cache_keys.trending() == "trending-week-1"
    assert cache_keys.trending("day", 2) == "trending-day-2"
    assert cache_keys.ai_search("cozy rainy day") == "ai-search-cozy rainy day"
    assert cache_keys.wishlist("u1") == "wishlist-u1"
    assert cache_keys.recommendations("u1") == "recommendations-u1"


def test_discover_key_distinguishes_filters():
    base = cache_keys.discover(None, "en-US", None, None, "popularity.desc")
    assert base == "discover-any-en-US-all-0-popularity.desc-1"
    assert cache_keys.discover(28, "en-US", None, None, "popularity.desc") != base
    assert cache_keys.discover(None, "en-US", "ko", None, "popularity.desc") != base
    assert cache_keys.discover(None, "en-US", None, 7.5, "popularity.desc") != base


def test_keys_are_deterministic():
    assert cache_keys.search("dune", 1) == cache_keys.search("dune", 1)
    assert cache_keys.movie(1) != cache_keys.movie(10)


def test_cache_times_defaults():
    assert CACHE_TIMES["genres"] == CACHE_TIMES["languages"] == 86400
    assert CACHE_TIMES["search"] == 300
    for family in ("movie", "movie_list", "trending", "top_rated", "upcoming", "now_playing"):
        assert CACHE_TIMES[family] == 3600


@pytest.mark.parametrize(
    "effective_type, expected",
    [
        (None, 3600),
        ("4g", 3600),
        ("3g", 5400),
        ("2g", 7200),
        ("slow-2g", 7200),
        ("SLOW-2G", 7200),
        ("wifi", 3600),
    ],
)
def test_adaptive_cache_ttl(effective_type, expected):
    assert adaptive_cache_ttl(3600, effective_type) == expected


def test_adaptive_cache_ttl_rounds_up():
    assert adaptive_cache_ttl(301, "3g") == 452
