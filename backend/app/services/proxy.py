import asyncio
import logging
from collections.abc import AsyncIterator

import httpx
from starlette.background import BackgroundTask
from starlette.responses import StreamingResponse

logger = logging.getLogger(__name__)


class UpstreamUnavailableError(Exception):
    """The upstream could not be reached (connect, DNS or timeout failure)."""


class ResponseTooLargeError(Exception):
    """The upstream declared a Content-Length above the response ceiling."""

    def __init__(self, declared: int, max_bytes: int):
        super().__init__(f"Upstream declared {declared} bytes, limit is {max_bytes}")
        self.declared = declared
        self.max_bytes = max_bytes


def _declared_length(headers: httpx.Headers) -> int | None:
    raw = headers.get("Content-Length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


async def _bounded_body(
    upstream: httpx.Response, max_bytes: int, deadline: float
) -> AsyncIterator[bytes]:
    """Relay at most ``max_bytes + 1`` bytes of the upstream body.

    The extra byte is what tells an oversized body apart from one that is
    exactly at the limit. By the time it is seen the status line and headers
    have already been sent, so overflow can only be logged. The copy also
    stops at ``deadline`` (event loop time), which is shared with the
    request that produced ``upstream``.
    """
    limit = max_bytes + 1
    copied = 0
    chunks = upstream.aiter_bytes()
    try:
        while True:
            try:
                async with asyncio.timeout_at(deadline):
                    chunk = await anext(chunks)
            except StopAsyncIteration:
                break
            except TimeoutError:
                logger.error(
                    "Upstream body not complete before timeout, stopped after %d bytes",
                    copied,
                )
                break
            if not chunk:
                continue
            chunk = chunk[: limit - copied]
            copied += len(chunk)
            yield chunk
            if copied > max_bytes:
                logger.error(
                    "Response exceeded max size of %d bytes, truncated after %d bytes",
                    max_bytes,
                    copied,
                )
                break
    except httpx.HTTPError as exc:
        logger.error("Copying upstream body failed after %d bytes: %s", copied, exc)
    finally:
        await chunks.aclose()
        await upstream.aclose()


async def forward(
    client: httpx.AsyncClient,
    target_url: str,
    max_bytes: int,
    timeout: float = 10.0,
) -> StreamingResponse:
    """GET the upstream target and relay it to the caller.

    Only the status code and Content-Type are mirrored. ``timeout`` bounds
    the whole exchange, from connecting to the last body byte, not each
    read on its own. Raises UpstreamUnavailableError when the request can't
    be made in time and ResponseTooLargeError when the declared length is
    above ``max_bytes``; in that case the upstream body is never read.
    """
    deadline = asyncio.get_running_loop().time() + timeout
    try:
        request = client.build_request("GET", target_url)
        async with asyncio.timeout_at(deadline):
            upstream = await client.send(request, stream=True)
    except (httpx.RequestError, httpx.InvalidURL) as exc:
        logger.error("Upstream request to %s failed: %s", target_url, exc)
        raise UpstreamUnavailableError(str(exc)) from exc
    except TimeoutError as exc:
        logger.error("Upstream request to %s timed out after %ss", target_url, timeout)
        raise UpstreamUnavailableError("timed out") from exc

    declared = _declared_length(upstream.headers)
    if declared is not None and declared > max_bytes:
        await upstream.aclose()
        logger.warning(
            "Upstream declared %d bytes, above the %d byte limit", declared, max_bytes
        )
        raise ResponseTooLargeError(declared, max_bytes)

    headers = {}
    content_type = upstream.headers.get("Content-Type")
    if content_type:
        headers["Content-Type"] = content_type

    return StreamingResponse(
        _bounded_body(upstream, max_bytes, deadline),
        status_code=upstream.status_code,
        headers=headers,
        # Closes the upstream even if the body iterator is never drained
        background=BackgroundTask(upstream.aclose),
    )
