import time
from fastapi import FastAPI, Request, Response
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

# --- Metric objects ---
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
GATEWAY_OUTCOMES = Counter(
    "gateway_requests_total",
    "Gateway fetches by outcome (hit, dedup, miss)",
    labelnames=["outcome"],
)
UPSTREAM_RESPONSES = Counter(
    "upstream_responses_total",
    "Upstream responses by HTTP status",
    labelnames=["status"],
)
UPSTREAM_FAILURES = Counter(
    "upstream_failures_total",
    "Upstream transport/parse failures",
    labelnames=["kind"],
)
UPSTREAM_ACTIVE_G = Gauge("upstream_active", "Upstream calls currently running")
UPSTREAM_WAITING_G = Gauge(
    "upstream_waiting", "Callers queued for an upstream concurrency slot"
)
CACHE_ENTRIES_G = Gauge("gateway_cache_entries", "Entries held in the gateway cache")


# --- Public helpers the gateway and routes can call ---
def record_outcome(outcome: str) -> None:
    GATEWAY_OUTCOMES.labels(outcome=outcome).inc()


def record_upstream_response(status: int) -> None:
    UPSTREAM_RESPONSES.labels(status=str(status)).inc()


def record_upstream_failure(kind: str) -> None:
    UPSTREAM_FAILURES.labels(kind=kind).inc()


def observe_gateway(active: int, waiting: int, cache_entries: int) -> None:
    UPSTREAM_ACTIVE_G.set(active)
    UPSTREAM_WAITING_G.set(waiting)
    CACHE_ENTRIES_G.set(cache_entries)


def _route_path(request: Request) -> str:
    # Route template keeps slugs out of label values
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


# --- Installation: middleware + /metrics endpoint ---
def install(app: FastAPI) -> None:
    @app.middleware("http")
    async def _metrics_mw(request: Request, call_next):
        t0 = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = getattr(response, "status_code", 500)
            return response
        finally:
            dur = time.perf_counter() - t0
            path = _route_path(request)
            REQUEST_LATENCY.labels(path=path, method=request.method).observe(dur)
            REQUESTS.labels(
                path=path,
                method=request.method,
                status=str(status),
            ).inc()

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
