# --- keep this shim at the very top ---
import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
# --------------------------------------

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio

# Anonymous tier and a roomy per-client limit unless a test says otherwise.
os.environ.pop("ARENA_ACCESS_TOKEN", None)
os.environ["RATE_LIMIT"] = "10000/minute"

import arena_proxy.main as app_main  # noqa: E402
from arena_proxy.gateway import Gateway, GatewayState  # noqa: E402
from arena_proxy.limiter import ConcurrencyLimiter  # noqa: E402
from arena_proxy.ttl_store import TTLStore  # noqa: E402

BASE = "https://api.are.na/v2"


def contents_url(slug: str, page: int = 1, per: int = 100) -> str:
    return f"{BASE}/channels/{slug}/contents?page={page}&per={per}"


def channels_url(kind: str, slug: str, page: int = 1, per: int = 100) -> str:
    return f"{BASE}/{kind}/{slug}/channels?page={page}&per={per}"


async def settle(rounds: int = 10) -> None:
    """Let every runnable task advance to its next real suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class FakeUpstream:
    """Stand-in for `httpx.AsyncClient` with scripted responses per URL.

    Each URL has a queue of responses (or exceptions to raise); the last one
    sticks once the queue is down to a single item. Records every call and the
    peak number of calls running at once.
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[str, Dict[str, str]]] = []
        self.routes: Dict[str, List[Any]] = {}
        self.default: Optional[httpx.Response] = None
        self.gate: Optional[asyncio.Event] = None
        self.delay = 0.0
        self.running = 0
        self.max_running = 0

    def add(self, url: str, *items: Any) -> None:
        self.routes.setdefault(url, []).extend(items)

    def count(self, url: str) -> int:
        return sum(1 for u, _ in self.calls if u == url)

    async def get(self, url, headers=None, **kwargs):
        self.calls.append((url, dict(headers or {})))
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            script = self.routes.get(url)
            if script:
                item = script.pop(0) if len(script) > 1 else script[0]
            elif self.default is not None:
                item = self.default
            else:
                item = httpx.Response(404, text="not found")
            if isinstance(item, Exception):
                raise item
            return item
        finally:
            self.running -= 1


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


def make_gateway(upstream, clock, *, token=None, limit=3) -> Gateway:
    state = GatewayState(
        cache=TTLStore(clock=clock),
        in_flight={},
        limiter=ConcurrencyLimiter(limit),
    )
    return Gateway(upstream, state, token=token, cache_ttl=600.0, rate_limit_ttl=15.0)


@pytest.fixture
def gateway(upstream, clock) -> Gateway:
    return make_gateway(upstream, clock)


@pytest_asyncio.fixture
async def test_client(gateway):
    """ASGI client whose routes use the test gateway (no lifespan)."""
    app_main.app.dependency_overrides[app_main.get_gateway] = lambda: gateway
    transport = httpx.ASGITransport(app=app_main.app)
    try:
        async with httpx.AsyncClient(
            transport=transport, base_url="http://testserver"
        ) as c:
            yield c
    finally:
        app_main.app.dependency_overrides.pop(app_main.get_gateway, None)
