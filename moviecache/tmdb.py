"""Async client for the TMDB v3 REST API.

Wraps a shared ``httpx.AsyncClient`` with tenacity-driven retries on throttling
(429), upstream 5xx and transient transport errors, honoring ``Retry-After``
when TMDB sends it. Payloads are returned as the decoded JSON dicts TMDB
produces; shaping them is left to the callers.
"""

import logging
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

BASE_URL = "https://api.themoviedb.org/3"
MAX_BACKOFF = 8.0  # seconds; also caps server-sent Retry-After

log = logging.getLogger(__name__)


class TransientHTTPError(Exception):
    """Retryable upstream response (429 or 5xx)."""

    def __init__(self, status_code: int, retry_after: float | None = None) -> None:
        super().__init__(f"Upstream error {status_code}")
        self.status_code = status_code
        self.retry_after = retry_after


class UpstreamError(Exception):
    """TMDB call failed for good; ``status_code`` is what the API layer should answer."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


def _parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header value.

    Supports both integer seconds and HTTP-date formats.

    Args:
        value: Header value or ``None``.

    Returns:
        Seconds to wait as a float, or ``None`` if the value is missing or invalid.
    """
    if not value:
        return None
    if value.isdigit():
        return float(value)
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, (dt - dt.now(dt.tzinfo)).total_seconds())


def wait_retry_after(
    fallback: Callable[[RetryCallState], float], cap: float = MAX_BACKOFF
) -> Callable[[RetryCallState], float]:
    """tenacity wait strategy: use the server's Retry-After (at most ``cap``), else ``fallback``."""

    def _wait(retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, TransientHTTPError) and exc.retry_after is not None:
            return min(exc.retry_after, cap)
        return fallback(retry_state)

    return _wait


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    log.warning(
        "upstream.retry attempt=%d error=%r delay=%.3fs",
        retry_state.attempt_number,
        exc,
        delay,
    )


def _with_original_language(params: Dict[str, Any], original_language: str | None) -> Dict[str, Any]:
    # "all" (or nothing) means no filter; TMDB wants the bare ISO 639-1 code
    if original_language and original_language != "all":
        params["with_original_language"] = original_language.split("-")[0]
    return params


class TMDBClient:
    """Thin TMDB API client; one coroutine per endpoint used by the service."""

    def __init__(
        self,
        api_key: str,
        base_url: str = BASE_URL,
        timeout: float = 10.0,
        max_retries: int = 5,
        wait: Callable[[RetryCallState], float] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._max_retries = max_retries
        self._wait = wait or wait_retry_after(wait_exponential(multiplier=0.5, min=0.5, max=MAX_BACKOFF))
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, params: Dict[str, Any] | None = None) -> Dict[str, Any]:
        """GET ``path`` with retries.

        Raises:
            UpstreamError: On a non-retryable 4xx (status passed through) or when
                retries are exhausted (429 if throttled throughout, else 503).
        """
        query = {k: v for k, v in (params or {}).items() if v is not None}
        query["api_key"] = self._api_key

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_retries),
            wait=self._wait,
            retry=retry_if_exception_type((TransientHTTPError, httpx.TransportError)),
            before_sleep=_log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    resp = await self._client.get(path, params=query)
                    if resp.status_code == 429 or resp.status_code >= 500:
                        raise TransientHTTPError(
                            resp.status_code,
                            _parse_retry_after(resp.headers.get("Retry-After")),
                        )
        except (TransientHTTPError, httpx.TransportError) as exc:
            log.error(
                "upstream.failed path=%s attempts=%d error=%r",
                path,
                self._max_retries,
                exc,
            )
            throttled = isinstance(exc, TransientHTTPError) and exc.status_code == 429
            raise UpstreamError(
                429 if throttled else 503, "TMDB API unavailable after retries"
            ) from exc

        if resp.status_code >= 400:
            log.info("upstream.rejected path=%s status=%d", path, resp.status_code)
            raise UpstreamError(resp.status_code, f"TMDB API error: {resp.reason_phrase}")
        return resp.json()

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    async def popular(self, page: int = 1, language: str = "en-US", original_language: str | None = None):
        params = _with_original_language({"page": page, "language": language}, original_language)
        return await self._get("/movie/popular", params)

    async def top_rated(self, page: int = 1, language: str = "en-US", original_language: str | None = None):
        params = _with_original_language({"page": page, "language": language}, original_language)
        return await self._get("/movie/top_rated", params)

    async def now_playing(self, page: int = 1):
        return await self._get("/movie/now_playing", {"page": page})

    async def upcoming(self, page: int = 1):
        return await self._get("/movie/upcoming", {"page": page})

    async def trending(self, time_window: str = "week"):
        return await self._get(f"/trending/movie/{time_window}")

    async def search(self, query: str, page: int = 1, language: str = "en-US"):
        return await self._get("/search/movie", {"query": query, "page": page, "language": language})

    async def discover(
        self,
        genre: int | None = None,
        language: str = "en-US",
        original_language: str | None = None,
        min_rating: float | None = None,
        sort_by: str = "popularity.desc",
        page: int = 1,
    ):
        params: Dict[str, Any] = {"page": page, "language": language, "sort_by": sort_by}
        _with_original_language(params, original_language)
        if genre:
            params["with_genres"] = genre
        if min_rating:
            params["vote_average.gte"] = min_rating
        return await self._get("/discover/movie", params)

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------

    async def genres(self):
        return await self._get("/genre/movie/list")

    async def languages(self):
        return await self._get("/configuration/languages")

    # ------------------------------------------------------------------
    # Movie detail parts
    # ------------------------------------------------------------------

    async def movie(self, movie_id: int):
        return await self._get(f"/movie/{movie_id}")

    async def credits(self, movie_id: int):
        return await self._get(f"/movie/{movie_id}/credits")

    async def videos(self, movie_id: int):
        return await self._get(f"/movie/{movie_id}/videos")

    async def similar(self, movie_id: int, page: int = 1):
        return await self._get(f"/movie/{movie_id}/similar", {"page": page})

    async def recommendations(self, movie_id: int, page: int = 1):
        return await self._get(f"/movie/{movie_id}/recommendations", {"page": page})
