"""Upstream gateway: caching, request coalescing and rate-limit backoff.

Every proxied request goes through :meth:`Gateway.fetch`, which

* serves fresh entries from an in-process TTL cache,
* coalesces concurrent identical requests onto a single upstream call,
* caps simultaneous upstream calls with a FIFO :class:`ConcurrencyLimiter`,
* caches 429 responses for the advertised ``Retry-After`` (or a short
  fallback) so a burst of clients cannot keep hammering a throttling upstream.

Generic upstream errors are returned but never cached; transport and JSON
failures raise :class:`UpstreamFailure` to every caller sharing the flight.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional

import httpx

from . import keys, metrics
from .limiter import ConcurrencyLimiter
from .ttl_store import TTLStore

log = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 600.0  # 10 minutes
DEFAULT_RATE_LIMIT_TTL = 15.0
DEFAULT_MAX_CONCURRENCY = 3
FALLBACK_ERROR = "Are.na API error"

_DELTA_SECONDS = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)")


class UpstreamFailure(Exception):
    """Upstream call failed before a usable response was obtained.

    Raised for network/timeout errors and for success responses whose body is
    not valid JSON. Never cached.
    """

    def __init__(self, url: str, message: str) -> None:
        super().__init__(message)
        self.url = url


@dataclass(frozen=True)
class CacheEntry:
    status: int
    body: Any
    retry_after: Optional[int] = None


@dataclass(frozen=True)
class UpstreamResult:
    status: int
    body: Any
    retry_after: Optional[int] = None
    from_cache: bool = False


@dataclass
class GatewayState:
    """Process-wide mutable state owned by one gateway.

    Built once at startup; tests build isolated instances.
    """

    cache: TTLStore = field(default_factory=TTLStore)
    in_flight: Dict[str, "asyncio.Task[UpstreamResult]"] = field(default_factory=dict)
    limiter: ConcurrencyLimiter = field(
        default_factory=lambda: ConcurrencyLimiter(DEFAULT_MAX_CONCURRENCY)
    )


def parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header value into seconds.

    Accepts delta-seconds (integer or decimal) and HTTP-date formats.

    Args:
        value: Header value or ``None``.

    Returns:
        Non-negative seconds as a float, or ``None`` if missing, invalid or
        not finite.
    """
    if not value:
        return None
    value = value.strip()
    if _DELTA_SECONDS.fullmatch(value):
        seconds = float(value)
    else:
        try:
            # HTTP-date -> seconds from now
            dt = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if dt is None or dt.tzinfo is None:
            return None
        return max(0.0, (dt - dt.now(dt.tzinfo)).total_seconds())
    if not math.isfinite(seconds):
        return None
    return max(0.0, seconds)


class Gateway:
    """Cached, deduplicated, concurrency-capped access to the upstream API."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        state: GatewayState | None = None,
        *,
        token: str | None = None,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        rate_limit_ttl: float = DEFAULT_RATE_LIMIT_TTL,
    ) -> None:
        self._client = client
        self.state = state or GatewayState()
        self._token = token
        self._cache_ttl = cache_ttl
        self._rate_limit_ttl = rate_limit_ttl

    @property
    def auth_tier(self) -> str:
        return keys.auth_tier(self._token)

    def _headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _observe(self) -> None:
        limiter = self.state.limiter
        metrics.observe_gateway(limiter.active, limiter.waiting, len(self.state.cache))

    async def fetch(
        self,
        cache_key: str,
        flight_key: str,
        url: str,
        bypass_cache: bool = False,
    ) -> UpstreamResult:
        """Return a cached, shared or fresh upstream result for ``url``.

        Args:
            cache_key: Identity of the cacheable response.
            flight_key: Dedup key for in-progress calls (differs from
                ``cache_key`` when bypassing).
            url: Absolute upstream URL.
            bypass_cache: Skip the cache read. The result is still cached.

        Returns:
            UpstreamResult. Callers sharing a flight get the same object.

        Raises:
            UpstreamFailure: Transport error or malformed JSON upstream.
        """
        if not bypass_cache:
            entry: Optional[CacheEntry] = self.state.cache.get(cache_key)
            if entry is not None:
                log.debug("gateway.cache_hit key=%s status=%d", cache_key, entry.status)
                metrics.record_outcome("hit")
                return UpstreamResult(
                    status=entry.status,
                    body=entry.body,
                    retry_after=entry.retry_after,
                    from_cache=True,
                )

        pending = self.state.in_flight.get(flight_key)
        if pending is not None:
            log.debug("gateway.dedup flight=%s", flight_key)
            metrics.record_outcome("dedup")
            return await asyncio.shield(pending)

        # No await between the lookup above and this registration
        task = asyncio.ensure_future(self._run_flight(cache_key, flight_key, url))
        task.add_done_callback(_retrieve_exception)
        self.state.in_flight[flight_key] = task
        metrics.record_outcome("miss")
        log.debug(
            "gateway.miss key=%s flight=%s bypass=%s", cache_key, flight_key, bypass_cache
        )

        # A disconnecting caller must not cancel the shared call
        return await asyncio.shield(task)

    async def _run_flight(self, cache_key: str, flight_key: str, url: str) -> UpstreamResult:
        try:
            return await self._call_upstream(cache_key, url)
        finally:
            self.state.in_flight.pop(flight_key, None)
            self._observe()

    async def _get(self, url: str) -> httpx.Response:
        self._observe()
        return await self._client.get(url, headers=self._headers())

    async def _call_upstream(self, cache_key: str, url: str) -> UpstreamResult:
        try:
            resp = await self.state.limiter.run(lambda: self._get(url))
        except httpx.HTTPError as exc:
            metrics.record_upstream_failure("transport")
            log.warning("upstream.error url=%s err=%r", url, exc)
            raise UpstreamFailure(url, f"Upstream request failed: {exc!r}") from exc

        status = resp.status_code
        metrics.record_upstream_response(status)

        if not resp.is_success:
            payload = {"error": resp.text or FALLBACK_ERROR}

            if status == 429:
                ra_hdr = resp.headers.get("Retry-After")
                ra = parse_retry_after(ra_hdr)
                ttl = ra if ra is not None else self._rate_limit_ttl
                retry_after = math.ceil(ra) if ra is not None else None
                self.state.cache.set(
                    cache_key, CacheEntry(429, payload, retry_after), ttl
                )
                log.warning(
                    "upstream.rate_limited url=%s retry_after=%s backoff=%.3fs",
                    url,
                    ra_hdr,
                    ttl,
                )
                return UpstreamResult(status=429, body=payload, retry_after=retry_after)

            log.warning("upstream.status url=%s status=%d", url, status)
            return UpstreamResult(status=status, body=payload)

        try:
            data = resp.json()
        except ValueError as exc:
            metrics.record_upstream_failure("parse")
            log.warning("upstream.bad_json url=%s status=%d err=%r", url, status, exc)
            raise UpstreamFailure(url, f"Upstream returned invalid JSON: {exc}") from exc

        # Cached even for bypassing callers so later requests see fresh data
        self.state.cache.set(cache_key, CacheEntry(status, data), self._cache_ttl)
        log.info("upstream.ok url=%s status=%d", url, status)
        return UpstreamResult(status=status, body=data)

    def snapshot(self) -> Dict[str, int]:
        """Return current sizes of the gateway's state for health reporting."""
        limiter = self.state.limiter
        return {
            "cache_entries": len(self.state.cache),
            "in_flight": len(self.state.in_flight),
            "upstream_active": limiter.active,
            "upstream_waiting": limiter.waiting,
            "max_concurrency": limiter.limit,
        }


def _retrieve_exception(task: "asyncio.Task[Any]") -> None:
    # Mark failures as retrieved when every caller has gone away
    if not task.cancelled():
        task.exception()
