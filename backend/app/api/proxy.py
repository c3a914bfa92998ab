import httpx
from fastapi import APIRouter, Depends, HTTPException, status

from app.config import Settings, get_settings
from app.dependencies import enforce_rate_limit, get_http_client
from app.services.proxy import ResponseTooLargeError, UpstreamUnavailableError, forward

router = APIRouter(tags=["proxy"])

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


# Every method and path is treated the same: always GET the fixed target.
@router.api_route(
    "/{path:path}",
    methods=PROXY_METHODS,
    dependencies=[Depends(enforce_rate_limit)],
    include_in_schema=False,
)
async def proxy(
    client: httpx.AsyncClient = Depends(get_http_client),
    settings: Settings = Depends(get_settings),
):
    try:
        return await forward(
            client,
            settings.target_url,
            settings.max_response_bytes,
            timeout=settings.upstream_timeout,
        )
    except UpstreamUnavailableError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Proxy failed"
        )
    except ResponseTooLargeError:
        raise HTTPException(status_code=413, detail="Response too large")
