import time
from typing import AsyncIterator

import httpx
import structlog

from unillm.core.errors import UpstreamError, UpstreamTransportError
from unillm.observability import record_upstream
from unillm.services.router import Route

logger = structlog.get_logger()


async def send_upstream(route: Route, request: httpx.Request, *, stream: bool) -> httpx.Response:
    """Send the outbound request; non-2xx answers become ``UpstreamError``.

    With ``stream=True`` the body is left unread and the caller owns closing
    the response.
    """
    started = time.perf_counter()
    try:
        response = await route.client.send(request, stream=stream)
    except httpx.HTTPError as e:
        record_upstream(route.provider.name, None, started)
        raise UpstreamTransportError(f"{route.provider.name}: {e!r}") from e
    record_upstream(route.provider.name, response.status_code, started)

    if not response.is_success:
        try:
            body = (await response.aread()).decode("utf-8", errors="replace")
        finally:
            await response.aclose()
        logger.error(
            "upstream_request_failed",
            provider=route.provider.name,
            model_id=route.model_id,
            status=response.status_code,
            body=body,
        )
        raise UpstreamError(response.status_code, body, provider=route.provider.name)
    return response


async def iter_upstream(route: Route, response: httpx.Response) -> AsyncIterator[bytes]:
    """Raw upstream chunks, with transport failures mapped to gateway errors."""
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    except httpx.HTTPError as e:
        raise UpstreamTransportError(
            f"{route.provider.name} stream broke: {e!r}", stage="stream"
        ) from e
