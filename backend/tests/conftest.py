from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.config import Settings, get_settings
from app.dependencies import create_http_client, get_http_client, get_rate_limiter
from app.main import app
from app.rate_limit import RateLimiter

TARGET_URL = "http://upstream.test/health"
DEFAULT_PEER = "203.0.113.7"


class FakeUpstream:
    """Stand-in for the upstream service, served through httpx.MockTransport."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.handler: Callable[[httpx.Request], httpx.Response] = lambda request: (
            httpx.Response(200, text="ok", headers={"Content-Type": "text/plain"})
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)


class TrackingStream(httpx.AsyncByteStream):
    """Upstream body that records whether it was read and closed."""

    def __init__(self, chunks: list[bytes]):
        self.chunks = chunks
        self.iterated = False
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        self.iterated = True
        for chunk in self.chunks:
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def proxy_settings() -> Settings:
    # 1 KiB ceiling keeps the size tests small
    return Settings(target_url=TARGET_URL, rate_limit_ms=1000, max_response_size=1)


@pytest.fixture
def limiter(proxy_settings: Settings) -> RateLimiter:
    return RateLimiter(window=proxy_settings.rate_limit_window)


@pytest_asyncio.fixture
async def client_from(
    upstream: FakeUpstream, proxy_settings: Settings, limiter: RateLimiter
) -> AsyncGenerator[Callable, None]:
    """Factory for clients whose requests arrive from a given peer address."""
    upstream_client = create_http_client(
        proxy_settings, transport=httpx.MockTransport(upstream)
    )
    app.dependency_overrides[get_settings] = lambda: proxy_settings
    app.dependency_overrides[get_http_client] = lambda: upstream_client
    app.dependency_overrides[get_rate_limiter] = lambda: limiter

    @asynccontextmanager
    async def _client(peer: str = DEFAULT_PEER) -> AsyncIterator[AsyncClient]:
        transport = ASGITransport(app=app, client=(peer, 40000))
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac

    yield _client
    app.dependency_overrides.clear()
    await upstream_client.aclose()


@pytest_asyncio.fixture
async def client(client_from) -> AsyncGenerator[AsyncClient, None]:
    async with client_from() as ac:
        yield ac
