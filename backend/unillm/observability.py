import time
from typing import Optional

import structlog
from fastapi import APIRouter
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger()

REQ_COUNTER = Counter("http_requests_total", "Total HTTP Requests", ["method", "path", "status"])
# for streamed chats this is time to first byte, not stream duration
REQ_LATENCY = Histogram("http_request_latency_seconds", "Request latency", ["method", "path"])
GATEWAY_ERRORS = Counter(
    "gateway_errors_total", "Failures surfaced to clients", ["stage", "error"]
)
UPSTREAM_REQUESTS = Counter(
    "upstream_requests_total", "Requests sent to upstream providers", ["provider", "status"]
)
UPSTREAM_LATENCY = Histogram(
    "upstream_response_latency_seconds",
    "Time until the upstream answered with a status line",
    ["provider"],
)


def record_upstream(provider: str, status: Optional[int], started: float) -> None:
    """``status`` is None when no response arrived at all."""
    UPSTREAM_REQUESTS.labels(provider, str(status) if status is not None else "error").inc()
    UPSTREAM_LATENCY.labels(provider).observe(time.perf_counter() - started)


def _route_path(request: Request) -> str:
    # label by template so unknown paths do not blow up cardinality
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            latency = time.perf_counter() - start
            path = _route_path(request)
            REQ_COUNTER.labels(request.method, path, status).inc()
            REQ_LATENCY.labels(request.method, path).observe(latency)


metrics_router = APIRouter()


@metrics_router.get("/metrics", include_in_schema=False)
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
