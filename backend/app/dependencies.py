import logging
import math

import httpx
from fastapi import Depends, HTTPException, Request, status

from app.config import Settings, get_settings
from app.rate_limit import RateLimiter, RequestIdentity, TrustConfig, should_throttle

logger = logging.getLogger(__name__)


def create_http_client(
    settings: Settings, transport: httpx.AsyncBaseTransport | None = None
) -> httpx.AsyncClient:
    """Build the shared upstream client. Redirects are followed like a plain GET."""
    return httpx.AsyncClient(
        timeout=settings.upstream_timeout,
        follow_redirects=True,
        transport=transport,
    )


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_trust_config(settings: Settings = Depends(get_settings)) -> TrustConfig:
    return settings.trust


async def enforce_rate_limit(
    request: Request,
    limiter: RateLimiter = Depends(get_rate_limiter),
    trust: TrustConfig = Depends(get_trust_config),
) -> None:
    """Reject the request with 429 unless it is exempt or wins the window."""
    identity = RequestIdentity.from_request(request)
    if not should_throttle(identity.direct_address, identity.claimed_proxy_ip, trust):
        logger.debug(
            "Exempt from rate limit: peer=%s claimed=%s",
            identity.direct_address,
            identity.claimed_proxy_ip,
        )
        return

    if limiter.try_admit():
        return

    retry_after = max(1, math.ceil(limiter.retry_after()))
    logger.debug(
        "Rate limited: peer=%s claimed=%s retry_after=%ss",
        identity.direct_address,
        identity.claimed_proxy_ip,
        retry_after,
    )
    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail="Rate limit exceeded",
        headers={"Retry-After": str(retry_after)},
    )
