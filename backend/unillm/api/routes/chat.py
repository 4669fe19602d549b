import time
from typing import AsyncIterator

import httpx
import structlog
from fastapi import APIRouter, Response
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from unillm.api.deps import DispatcherDep
from unillm.core.errors import GatewayError
from unillm.schemas import ChatRequest
from unillm.services.converter import convert_response
from unillm.services.router import Route
from unillm.services.transcoder import StreamTranscoder
from unillm.services.upstream import iter_upstream, send_upstream

router = APIRouter(tags=["chat"])
logger = structlog.get_logger()

NDJSON = "application/x-ndjson"


async def _ndjson_stream(route: Route, upstream: httpx.Response) -> AsyncIterator[str]:
    transcoder = StreamTranscoder(route.provider, route.model_id)
    try:
        async for line in transcoder.transcode(iter_upstream(route, upstream)):
            yield line
    except GatewayError as e:
        # headers are already sent; all we can do is cut the stream short
        logger.error(
            "stream_aborted",
            model_id=route.model_id,
            provider=route.provider.name,
            stage=e.stage,
            error=str(e),
        )
        raise
    finally:
        await upstream.aclose()


@router.post("/chat")
async def chat(payload: ChatRequest, dispatcher: DispatcherDep) -> Response:
    """Ollama `/api/chat`, served by whichever upstream owns `payload.model`."""
    route = dispatcher.resolve(payload.model)
    logger.info(
        "chat_dispatch",
        model_id=route.model_id,
        model_name=route.model_name,
        provider=route.provider.name,
        proxied=route.proxied,
        stream=payload.stream,
    )
    request = route.provider.build_request(route.client, payload, route.model_name, route.api_key)
    start = time.perf_counter_ns()

    if payload.stream:
        upstream = await send_upstream(route, request, stream=True)
        return StreamingResponse(
            _ndjson_stream(route, upstream),
            media_type=NDJSON,
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",  # Disable nginx buffering
            },
            background=BackgroundTask(upstream.aclose),
        )

    # Non-stream path
    upstream = await send_upstream(route, request, stream=False)
    frame = convert_response(
        route.provider,
        route.model_id,
        upstream.content,
        elapsed_ns=time.perf_counter_ns() - start,
    )
    logger.debug("response_body", model_id=route.model_id, body=frame.to_json())
    return Response(content=frame.to_json(), media_type="application/json")
