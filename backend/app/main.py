import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request
from starlette.responses import PlainTextResponse

from app.api.proxy import router as proxy_router
from app.config import get_settings
from app.dependencies import create_http_client
from app.rate_limit import RateLimiter

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    app.state.rate_limiter = RateLimiter(window=settings.rate_limit_window)
    app.state.http_client = create_http_client(settings)

    logger.info(
        "health-proxy listening on :%s, proxying to %s", settings.port, settings.target_url
    )
    logger.info("Rate limit: %dms between requests", settings.rate_limit_ms)
    logger.info("Max response size: %d bytes", settings.max_response_bytes)
    if settings.rate_limit_whitelist_ip:
        logger.info("Whitelist IP: %s", settings.rate_limit_whitelist_ip)
    if settings.trusted_proxy_ip:
        logger.info("Trusted proxy: %s", settings.trusted_proxy_ip)
    elif settings.rate_limit_whitelist_ip:
        logger.warning(
            "No trusted proxy configured: forwarded headers are ignored, "
            "only direct connections from %s are exempt",
            settings.rate_limit_whitelist_ip,
        )

    yield

    await app.state.http_client.aclose()


# No docs routes: every path belongs to the proxy
app = FastAPI(
    title="health-proxy",
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)


@app.exception_handler(StarletteHTTPException)
async def plain_text_http_exception(request: Request, exc: StarletteHTTPException):
    """Render synthetic errors as plain text, the way health checkers expect."""
    return PlainTextResponse(
        str(exc.detail), status_code=exc.status_code, headers=exc.headers
    )


app.include_router(proxy_router)
