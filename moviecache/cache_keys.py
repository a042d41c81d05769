"""String key builders for the response cache.

Keys share a ``<family>-`` prefix so whole families can be dropped with
``CacheManager.invalidate("^<family>-")``.
"""


def genre() -> str:
    return "genres"


def language() -> str:
    return "languages"


def movie(movie_id: int) -> str:
    return f"movie-{movie_id}"


def movie_part(movie_id: int, part: str) -> str:
    """Key for a sub-resource of a movie (credits, videos, similar, ...)."""
    return f"movie-{movie_id}-{part}"


def movie_list(list_type: str, page: int = 1) -> str:
    return f"movies-{list_type}-{page}"


def search(query: str, page: int = 1) -> str:
    return f"search-{query}-{page}"


def trending(time_window: str = "week", page: int = 1) -> str:
    return f"trending-{time_window}-{page}"


def ai_search(query: str) -> str:
    return f"ai-search-{query}"


def wishlist(user_id: str) -> str:
    return f"wishlist-{user_id}"


def recommendations(user_id: str) -> str:
    return f"recommendations-{user_id}"


def discover(
    genre: int | None,
    language: str,
    original_language: str | None,
    min_rating: float | None,
    sort_by: str,
    page: int = 1,
) -> str:
    return (
        f"discover-{genre or 'any'}-{language}-{original_language or 'all'}"
        f"-{min_rating or 0}-{sort_by}-{page}"
    )
