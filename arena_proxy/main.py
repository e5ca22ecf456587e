"""FastAPI app, lifespan bootstrap, and HTTP routes.

Route handlers are thin adapters: they turn path/query parameters into cache
keys and an upstream URL, then hand off to the shared :class:`Gateway`.

- GET /                                    -> redirect to Swagger UI (/docs)
- GET /api/health, /healthz                -> liveness
- GET /healthcheck                         -> gateway state snapshot
- GET /api/arena/channels/{slug}/contents  -> channel blocks (as-is)
- GET /api/arena/groups/{slug}/channels    -> group channels (normalized)
- GET /api/arena/users/{slug}/channels     -> user channels (normalized)
- GET /api/arena/profiles/{slug}/channels  -> group channels, user on 404
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx
from fastapi import FastAPI, HTTPException, Query, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse, JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import keys, metrics
from .gateway import Gateway, GatewayState, UpstreamFailure, UpstreamResult
from .limiter import ConcurrencyLimiter
from .logging_config import configure_logging
from .schemas import HealthcheckOut, ProblemDetail
from .settings import Settings, settings
from .ttl_store import TTLStore

configure_logging()
log = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# App
# ---------------------------------------------------------------------

app = FastAPI(title="Are.na Proxy", version="1.0.0")

limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["GET"],
    allow_headers=["*"],
    expose_headers=["x-proxy-cache", "Retry-After"],
)
metrics.install(app)


_STATUS_TITLES = {
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    405: "Method Not Allowed",
    422: "Unprocessable Entity",
    429: "Too Many Requests",
    500: "Internal Server Error",
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


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(_req: Request, exc: StarletteHTTPException):
    detail = exc.detail if isinstance(exc.detail, str) else None
    return _problem(
        status=exc.status_code, title=_STATUS_TITLES.get(exc.status_code), detail=detail
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_req: Request, exc: RequestValidationError):
    msg = exc.errors()[0]["msg"] if exc.errors() else "Validation error"
    return _problem(status=422, title=_STATUS_TITLES[422], detail=msg)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_exception_handler(req: Request, exc: RateLimitExceeded):
    log.info("route.rate_limited client=%s path=%s", get_remote_address(req), req.url.path)
    return _problem(
        status=429, title=_STATUS_TITLES[429], detail=f"Rate limit exceeded: {exc.detail}"
    )


@app.exception_handler(UpstreamFailure)
async def upstream_failure_handler(req: Request, exc: UpstreamFailure):
    log.error("route.proxy_failed path=%s url=%s error=%s", req.url.path, exc.url, exc)
    return _problem(
        status=500,
        title=_STATUS_TITLES[500],
        detail=f"Proxy failed: {exc}",
        instance=req.url.path,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(req: Request, exc: Exception):
    log.exception("route.unhandled path=%s error=%r", req.url.path, exc)
    return _problem(
        status=500,
        title=_STATUS_TITLES[500],
        detail="Unexpected server error",
        instance=req.url.path,
    )


# ---------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------


def build_gateway(client: httpx.AsyncClient, cfg: Settings = settings) -> Gateway:
    """Build the process-wide gateway and its state from configuration."""
    state = GatewayState(
        cache=TTLStore(),
        in_flight={},
        limiter=ConcurrencyLimiter(cfg.MAX_UPSTREAM_CONCURRENCY),
    )
    return Gateway(
        client,
        state,
        token=cfg.ARENA_ACCESS_TOKEN,
        cache_ttl=cfg.CACHE_TTL_SECONDS,
        rate_limit_ttl=cfg.RATE_LIMIT_TTL_SECONDS,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: one upstream client and one gateway per process."""
    if not settings.ARENA_ACCESS_TOKEN:
        log.warning(
            "startup.no_token ARENA_ACCESS_TOKEN not set; using anonymous tier"
        )

    async with httpx.AsyncClient(
        timeout=settings.REQUEST_TIMEOUT, follow_redirects=True
    ) as client:
        app.state.gateway = build_gateway(client)
        log.info(
            "startup.gateway_ready tier=%s max_concurrency=%d cache_ttl=%.0fs timeout=%.1fs",
            app.state.gateway.auth_tier,
            settings.MAX_UPSTREAM_CONCURRENCY,
            settings.CACHE_TTL_SECONDS,
            settings.REQUEST_TIMEOUT,
        )
        try:
            yield
        finally:
            app.state.gateway = None
            log.info("shutdown.gateway_closed")


app.router.lifespan_context = lifespan


def get_gateway(request: Request) -> Gateway:
    """FastAPI dependency returning the process-wide gateway."""
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise HTTPException(status_code=503, detail="Gateway not initialized")
    return gateway


_problem_resp = {
    "application/problem+json": {"schema": ProblemDetail.model_json_schema()},
}
_proxy_responses: Dict[int | str, Dict[str, Any]] = {
    422: {"content": _problem_resp, "model": ProblemDetail},
    429: {"description": "Rate limited (upstream or per-client)"},
    500: {"content": _problem_resp, "model": ProblemDetail},
}

# ---------------------------------------------------------------------
# Proxy helpers
# ---------------------------------------------------------------------


async def _proxy(
    gateway: Gateway,
    resource_type: str,
    slug: str,
    subresource: str,
    page: int,
    per: int,
    nocache: Optional[str],
) -> UpstreamResult:
    """Derive keys + URL for one upstream resource and fetch it via the gateway."""
    bypass = keys.is_bypass(nocache)
    cache_key = keys.cache_key(
        gateway.auth_tier, resource_type, slug, subresource, page, per
    )
    url = keys.upstream_url(
        settings.ARENA_API_BASE, resource_type, slug, subresource, page, per
    )
    result = await gateway.fetch(
        cache_key, keys.flight_key(cache_key, bypass), url, bypass
    )
    log.info(
        "route.proxy resource=%s/%s/%s page=%d per=%d bypass=%s status=%d cache=%s",
        resource_type,
        slug,
        subresource,
        page,
        per,
        bypass,
        result.status,
        "HIT" if result.from_cache else "MISS",
    )
    return result


def _channels_payload(result: UpstreamResult) -> Any:
    """Reduce a successful channel-list body to the bare list of channels."""
    if not 200 <= result.status < 300:
        return result.body
    data = result.body
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return data.get("channels") or []
    return []


def _respond(result: UpstreamResult, content: Any) -> JSONResponse:
    headers = {"x-proxy-cache": "HIT" if result.from_cache else "MISS"}
    if result.status == 429 and result.retry_after is not None:
        headers["Retry-After"] = str(result.retry_after)
    return JSONResponse(status_code=result.status, content=content, headers=headers)


# ---------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------


@app.get("/", include_in_schema=False)
async def root(_request: Request):
    """Redirect the root path to the interactive API docs (/docs)."""
    return RedirectResponse(url=app.docs_url or "/docs", status_code=307)


@app.get("/healthz", include_in_schema=False)
async def healthz():
    """Lightweight, in-process health endpoint.

    Always returns 200 if the app can serve requests. Never touches upstream.
    """
    return {"status": "ok"}


@app.get("/api/health")
async def api_health():
    return {"ok": True}


@app.get("/healthcheck", response_model=HealthcheckOut)
async def healthcheck(gateway: Gateway = Depends(get_gateway)):
    """Report gateway state: auth tier, cache size, in-flight and queued calls.

    Never calls upstream.
    """
    snap = gateway.snapshot()
    log.info(
        "route.healthcheck tier=%s cache_entries=%d in_flight=%d active=%d waiting=%d",
        gateway.auth_tier,
        snap["cache_entries"],
        snap["in_flight"],
        snap["upstream_active"],
        snap["upstream_waiting"],
    )
    return {"status": "ok", "auth_tier": gateway.auth_tier, **snap}


@app.get("/api/arena/channels/{channel_slug}/contents", responses=_proxy_responses)
@limiter.limit(settings.RATE_LIMIT)
async def channel_contents(
    request: Request,
    channel_slug: str,
    page: int = Query(1, ge=1),
    per: int = Query(settings.DEFAULT_PER, ge=1),
    nocache: Optional[str] = Query(None),
    gateway: Gateway = Depends(get_gateway),
):
    """Return one page of a channel's blocks exactly as upstream sends them."""
    result = await _proxy(gateway, "channels", channel_slug, "contents", page, per, nocache)
    return _respond(result, result.body)


@app.get("/api/arena/groups/{group_slug}/channels", responses=_proxy_responses)
@limiter.limit(settings.RATE_LIMIT)
async def group_channels(
    request: Request,
    group_slug: str,
    page: int = Query(1, ge=1),
    per: int = Query(settings.DEFAULT_PER, ge=1),
    nocache: Optional[str] = Query(None),
    gateway: Gateway = Depends(get_gateway),
):
    """Return a group's channels as a bare list."""
    result = await _proxy(gateway, "groups", group_slug, "channels", page, per, nocache)
    return _respond(result, _channels_payload(result))


@app.get("/api/arena/users/{user_slug}/channels", responses=_proxy_responses)
@limiter.limit(settings.RATE_LIMIT)
async def user_channels(
    request: Request,
    user_slug: str,
    page: int = Query(1, ge=1),
    per: int = Query(settings.DEFAULT_PER, ge=1),
    nocache: Optional[str] = Query(None),
    gateway: Gateway = Depends(get_gateway),
):
    """Return a user's channels as a bare list."""
    result = await _proxy(gateway, "users", user_slug, "channels", page, per, nocache)
    return _respond(result, _channels_payload(result))


@app.get("/api/arena/profiles/{slug}/channels", responses=_proxy_responses)
@limiter.limit(settings.RATE_LIMIT)
async def profile_channels(
    request: Request,
    slug: str,
    page: int = Query(1, ge=1),
    per: int = Query(settings.DEFAULT_PER, ge=1),
    nocache: Optional[str] = Query(None),
    gateway: Gateway = Depends(get_gateway),
):
    """Return a profile's channels, whether the profile is a group or a user.

    Many Are.na profiles are users rather than groups, so a 404 from the group
    endpoint falls back to the user endpoint.
    """
    result = await _proxy(gateway, "groups", slug, "channels", page, per, nocache)
    if result.status == 404:
        log.info("route.profile_channels group_not_found slug=%s trying=users", slug)
        result = await _proxy(gateway, "users", slug, "channels", page, per, nocache)
    return _respond(result, _channels_payload(result))
