import time
from fastapi import FastAPI, Request, Response
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

# --- HTTP ---
REQUESTS = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["path", "method", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_latency_seconds",
    "Request latency seconds",
    labelnames=["path", "method"],
)

# --- TTL cache / coalescing ---
CACHE_HITS = Counter("response_cache_hits_total", "TTL cache hits")
CACHE_MISSES = Counter("response_cache_misses_total", "TTL cache misses")
CACHE_FETCHES = Counter(
    "response_cache_fetches_total", "Underlying fetches started by the cache"
)
CACHE_JOINS = Counter(
    "response_cache_joins_total", "Callers that joined an in-flight fetch"
)
CACHE_ERRORS = Counter(
    "cache_errors_total", "Cache operation errors", labelnames=["cache", "op"]
)
PENDING_G = Gauge("response_cache_pending", "In-flight fetches tracked by the cache")

# --- Component LRU ---
LRU_EVICTIONS = Counter("component_cache_evictions_total", "LRU capacity evictions")


def record_cache_hit():
    CACHE_HITS.inc()


def record_cache_miss():
    CACHE_MISSES.inc()


def record_cache_fetch():
    CACHE_FETCHES.inc()


def record_cache_join():
    CACHE_JOINS.inc()


def record_cache_error(op: str, cache: str = "response"):
    CACHE_ERRORS.labels(cache=cache, op=op).inc()


def record_lru_eviction():
    LRU_EVICTIONS.inc()


def observe_pending(n: int) -> None:
    PENDING_G.set(n)


def install(app: FastAPI) -> None:
    @app.middleware("http")
    async def _metrics_mw(request: Request, call_next):
        t0 = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            dur = time.perf_counter() - t0
            REQUEST_LATENCY.labels(
                path=request.url.path, method=request.method
            ).observe(dur)
            REQUESTS.labels(
                path=request.url.path, method=request.method, status=str(status)
            ).inc()

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
