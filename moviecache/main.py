"""FastAPI app, lifespan bootstrap, and HTTP routes.

Every TMDB call goes through the response cache: listings and detail parts via
``get_or_fetch`` (coalesced, TTL'd), reference data (genres, languages) via
stale-while-revalidate, and assembled movie pages additionally sit in the
component LRU cache.

- GET    /api/movies/popular|top-rated|now-playing|upcoming|trending|search|discover
- GET    /api/movies/{movie_id}
- GET    /api/genres, /api/languages
- GET    /cache/stats
- DELETE /cache?pattern=<regex>
- GET    /healthz, /metrics
"""

import re
import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from functools import partial
from typing import List

from fastapi import FastAPI, HTTPException, Query, Path, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import RedirectResponse, JSONResponse

from . import cache_keys, metrics
from .cache import (
    CACHE_TIMES,
    BatchRequest,
    CacheManager,
    adaptive_cache_ttl,
    batch_requests,
    prefetch,
    stale_while_revalidate,
)
from .logging_config import configure_logging
from .lru import LRUCache
from .schemas import CacheStatsOut, InvalidateOut, ProblemDetail
from .settings import settings
from .tmdb import TMDBClient, UpstreamError

configure_logging()
log = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# App
# ---------------------------------------------------------------------

app = FastAPI(title="Movie Catalog Cache", version="0.3.0")
metrics.install(app)


_STATUS_TITLES = {
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    422: "Unprocessable Entity",
    429: "Too Many Requests",
    500: "Internal Server Error",
    502: "Bad Gateway",
    503: "Service Unavailable",
}


def _problem(
    status: int,
    title: str | None = None,
    detail: str | None = None,
    instance: str | None = None,
) -> JSONResponse:
    """Return an RFC7807 problem+json response."""
    body = {
        "type": "about:blank",
        "title": title or _STATUS_TITLES.get(status, "Error"),
        "status": status,
        "detail": detail,
        "instance": instance,
    }
    return JSONResponse(
        status_code=status, content=body, media_type="application/problem+json"
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(_req: Request, exc: HTTPException):
    detail = exc.detail if isinstance(exc.detail, str) else None
    return _problem(status=exc.status_code, detail=detail)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_req: Request, exc: RequestValidationError):
    msg = exc.errors()[0]["msg"] if exc.errors() else "Validation error"
    return _problem(status=422, detail=msg)


@app.exception_handler(UpstreamError)
async def upstream_exception_handler(req: Request, exc: UpstreamError):
    status = exc.status_code if 400 <= exc.status_code < 600 else 502
    log.info("route.upstream_error path=%s status=%d detail=%s", req.url.path, status, exc.detail)
    return _problem(status=status, detail=exc.detail, instance=req.url.path)


# ---------------------------------------------------------------------
# Lifespan + dependencies
# ---------------------------------------------------------------------


def _list_key(kind: str, page: int, language: str, original_language: str | None) -> str:
    return f"{cache_keys.movie_list(kind, page)}-{language}-{original_language or 'all'}"


def _startup_requests(tmdb: TMDBClient) -> List[BatchRequest]:
    lang = settings.DEFAULT_LANGUAGE
    return [
        BatchRequest(cache_keys.genre(), tmdb.genres, CACHE_TIMES["genres"]),
        BatchRequest(cache_keys.language(), tmdb.languages, CACHE_TIMES["languages"]),
        BatchRequest(
            _list_key("popular", 1, lang, None),
            partial(tmdb.popular, 1, lang),
            CACHE_TIMES["movie_list"],
        ),
        BatchRequest(
            cache_keys.trending("week"),
            partial(tmdb.trending, "week"),
            CACHE_TIMES["trending"],
        ),
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the per-process caches and TMDB client; optionally warm the cache."""
    if not settings.TMDB_API_KEY:
        log.warning("startup.missing_env TMDB_API_KEY is empty; upstream calls will be rejected")

    app.state.cache = CacheManager()
    app.state.component_cache = LRUCache(max_size=settings.COMPONENT_CACHE_SIZE)
    app.state.tmdb = TMDBClient(
        api_key=settings.TMDB_API_KEY,
        base_url=settings.TMDB_BASE_URL,
        timeout=settings.REQUEST_TIMEOUT,
        max_retries=settings.MAX_RETRIES,
    )
    log.info(
        "startup.caches ready component_cache_size=%d prefetch=%s",
        settings.COMPONENT_CACHE_SIZE,
        settings.PREFETCH_ON_STARTUP,
    )

    task = None
    if settings.PREFETCH_ON_STARTUP:
        task = asyncio.create_task(
            prefetch(app.state.cache, _startup_requests(app.state.tmdb))
        )

    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        await app.state.tmdb.aclose()


app.router.lifespan_context = lifespan


def get_cache(request: Request) -> CacheManager:
    return request.app.state.cache


def get_component_cache(request: Request) -> LRUCache:
    return request.app.state.component_cache


def get_tmdb(request: Request) -> TMDBClient:
    return request.app.state.tmdb


def _ttl(request: Request, family: str) -> int:
    """Default TTL for ``family``, stretched for slow clients (ECT client hint)."""
    return adaptive_cache_ttl(CACHE_TIMES[family], request.headers.get("ect"))


_problem_resp = {
    "application/problem+json": {"schema": ProblemDetail.model_json_schema()},
}
_upstream_errors = {
    404: {"content": _problem_resp, "model": ProblemDetail},
    503: {"content": _problem_resp, "model": ProblemDetail},
}

# ---------------------------------------------------------------------
# Routes: listings
# ---------------------------------------------------------------------


@app.get("/", include_in_schema=False)
async def root(_request: Request):
    """Redirect the root path to the interactive API docs (/docs)."""
    return RedirectResponse(url=app.docs_url or "/docs", status_code=307)


@app.get("/healthz", include_in_schema=False)
async def healthz():
    """Liveness probe; never touches TMDB."""
    return {"status": "ok"}


@app.get("/api/movies/popular", responses=_upstream_errors)
async def popular_movies(
    request: Request,
    page: int = Query(1, ge=1, le=500),
    language: str = Query(settings.DEFAULT_LANGUAGE),
    original_language: str | None = Query(None, alias="originalLanguage"),
    cache: CacheManager = Depends(get_cache),
    tmdb: TMDBClient = Depends(get_tmdb),
):
    key = _list_key("popular", page, language, original_language)
    fetcher = partial(tmdb.popular, page, language, original_language)
    return await cache.get_or_fetch(key, fetcher, _ttl(request, "movie_list"))


@app.get("/api/movies/top-rated", responses=_upstream_errors)
async def top_rated_movies(
    request: Request,
    page: int = Query(1, ge=1, le=500),
    language: str = Query(settings.DEFAULT_LANGUAGE),
    original_language: str | None = Query(None, alias="originalLanguage"),
    cache: CacheManager = Depends(get_cache),
    tmdb: TMDBClient = Depends(get_tmdb),
):
    key = _list_key("top_rated", page, language, original_language)
    fetcher = partial(tmdb.top_rated, page, language, original_language)
    return await cache.get_or_fetch(key, fetcher, _ttl(request, "top_rated"))


@app.get("/api/movies/now-playing", responses=_upstream_errors)
async def now_playing_movies(
    request: Request,
    page: int = Query(1, ge=1, le=500),
    cache: CacheManager = Depends(get_cache),
    tmdb: TMDBClient = Depends(get_tmdb),
):
    key = cache_keys.movie_list("now_playing", page)
    return await cache.get_or_fetch(
        key, partial(tmdb.now_playing, page), _ttl(request, "now_playing")
    )


@app.get("/api/movies/upcoming", responses=_upstream_errors)
async def upcoming_movies(
    request: Request,
    page: int = Query(1, ge=1, le=500),
    cache: CacheManager = Depends(get_cache),
    tmdb: TMDBClient = Depends(get_tmdb),
):
    key = cache_keys.movie_list("upcoming", page)
    return await cache.get_or_fetch(
        key, partial(tmdb.upcoming, page), _ttl(request, "upcoming")
    )


@app.get("/api/movies/trending", responses=_upstream_errors)
async def trending_movies(
    request: Request,
    time_window: str = Query("week", alias="timeWindow", pattern=r"^(day|week)$"),
    cache: CacheManager = Depends(get_cache),
    tmdb: TMDBClient = Depends(get_tmdb),
):
    key = cache_keys.trending(time_window)
    return await cache.get_or_fetch(
        key, partial(tmdb.trending, time_window), _ttl(request, "trending")
    )


@app.get(
    "/api/movies/search",
    responses={400: {"content": _problem_resp, "model": ProblemDetail}, **_upstream_errors},
)
async def search_movies(
    request: Request,
    query: str | None = Query(None),
    page: int = Query(1, ge=1, le=500),
    language: str = Query(settings.DEFAULT_LANGUAGE),
    cache: CacheManager = Depends(get_cache),
    tmdb: TMDBClient = Depends(get_tmdb),
):
    """Search movies by title; results cached briefly (see CACHE_TIMES["search"])."""
    q = (query or "").strip()
    if not q:
        raise HTTPException(status_code=400, detail="Query parameter is required")
    key = f"{cache_keys.search(q, page)}-{language}"
    return await cache.get_or_fetch(
        key, partial(tmdb.search, q, page, language), _ttl(request, "search")
    )


@app.get("/api/movies/discover", responses=_upstream_errors)
async def discover_movies(
    request: Request,
    genre: int | None = Query(None, ge=1),
    language: str = Query(settings.DEFAULT_LANGUAGE),
    original_language: str | None = Query(None, alias="originalLanguage"),
    min_rating: float | None = Query(None, alias="minRating", ge=0, le=10),
    sort_by: str = Query("popularity.desc", alias="sortBy"),
    page: int = Query(1, ge=1, le=500),
    cache: CacheManager = Depends(get_cache),
    tmdb: TMDBClient = Depends(get_tmdb),
):
    key = cache_keys.discover(genre, language, original_language, min_rating, sort_by, page)
    fetcher = partial(
        tmdb.discover,
        genre=genre,
        language=language,
        original_language=original_language,
        min_rating=min_rating,
        sort_by=sort_by,
        page=page,
    )
    return await cache.get_or_fetch(key, fetcher, _ttl(request, "movie_list"))


# ---------------------------------------------------------------------
# Routes: detail page + reference data
# ---------------------------------------------------------------------


@app.get("/api/movies/{movie_id}", responses=_upstream_errors)
async def movie_detail(
    request: Request,
    movie_id: int = Path(..., ge=1),
    cache: CacheManager = Depends(get_cache),
    component_cache: LRUCache = Depends(get_component_cache),
    tmdb: TMDBClient = Depends(get_tmdb),
):
    """Assemble a movie page (details, credits, videos, similar, recommendations).

    The parts are fetched concurrently through the response cache; the
    assembled page is kept in the component LRU cache and served from there
    only while the details entry it was built from is still live.
    """
    page_key = cache_keys.movie(movie_id)
    cached = component_cache.get(page_key)
    if cached is not None and cache.entry(page_key) is not None:
        log.debug("route.movie_detail component_hit movie_id=%d", movie_id)
        return cached

    ttl = _ttl(request, "movie")
    details, credits, videos, similar, recs = await batch_requests(
        cache,
        [
            BatchRequest(page_key, partial(tmdb.movie, movie_id), ttl),
            BatchRequest(cache_keys.movie_part(movie_id, "credits"), partial(tmdb.credits, movie_id), ttl),
            BatchRequest(cache_keys.movie_part(movie_id, "videos"), partial(tmdb.videos, movie_id), ttl),
            BatchRequest(cache_keys.movie_part(movie_id, "similar"), partial(tmdb.similar, movie_id), ttl),
            BatchRequest(
                cache_keys.movie_part(movie_id, "recommendations"),
                partial(tmdb.recommendations, movie_id),
                ttl,
            ),
        ],
    )

    page = {
        **details,
        "credits": credits,
        "videos": videos.get("results", []),
        "similar": similar.get("results", []),
        "recommendations": recs.get("results", []),
    }
    component_cache.set(page_key, page)
    log.info("route.movie_detail assembled movie_id=%d", movie_id)
    return page


@app.get("/api/genres", responses=_upstream_errors)
async def genres(
    request: Request,
    cache: CacheManager = Depends(get_cache),
    tmdb: TMDBClient = Depends(get_tmdb),
):
    return await stale_while_revalidate(
        cache, cache_keys.genre(), tmdb.genres, _ttl(request, "genres")
    )


@app.get("/api/languages", responses=_upstream_errors)
async def languages(
    request: Request,
    cache: CacheManager = Depends(get_cache),
    tmdb: TMDBClient = Depends(get_tmdb),
):
    return await stale_while_revalidate(
        cache, cache_keys.language(), tmdb.languages, _ttl(request, "languages")
    )


# ---------------------------------------------------------------------
# Routes: cache admin
# ---------------------------------------------------------------------


@app.get("/cache/stats", response_model=CacheStatsOut)
async def cache_stats(
    cache: CacheManager = Depends(get_cache),
    component_cache: LRUCache = Depends(get_component_cache),
):
    lru = component_cache.stats()
    return {
        **cache.stats(),
        "component_size": lru["size"],
        "component_max_size": lru["max_size"],
    }


@app.delete(
    "/cache",
    response_model=InvalidateOut,
    responses={400: {"content": _problem_resp, "model": ProblemDetail}},
)
async def invalidate_cache(
    pattern: str | None = Query(None, description="Regular expression matched against keys"),
    cache: CacheManager = Depends(get_cache),
    component_cache: LRUCache = Depends(get_component_cache),
):
    """Drop keys matching ``pattern`` from both caches, or everything when omitted."""
    if pattern is None:
        removed = cache.stats()["size"]
        component_removed = component_cache.stats()["size"]
        cache.clear()
        component_cache.clear()
        log.info("route.cache cleared removed=%d component_removed=%d", removed, component_removed)
        return {"pattern": None, "removed": removed, "component_removed": component_removed}

    try:
        removed = cache.invalidate(pattern)
    except re.error as exc:
        raise HTTPException(status_code=400, detail=f"Invalid pattern: {exc}") from exc
    component_removed = component_cache.invalidate(pattern)
    return {"pattern": pattern, "removed": removed, "component_removed": component_removed}
