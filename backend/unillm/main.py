from contextlib import AsyncExitStack, asynccontextmanager
from typing import Optional

import httpx
import sentry_sdk
import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse
from fastapi.routing import APIRoute
from starlette.middleware.cors import CORSMiddleware

from unillm.api.main import api_router
from unillm.core.config import settings
from unillm.core.errors import GatewayError
from unillm.core.logging import configure_logging
from unillm.core.models_config import load_models_config
from unillm.middleware.request_id import RequestIdMiddleware
from unillm.observability import GATEWAY_ERRORS, MetricsMiddleware, metrics_router
from unillm.services.registry import ProviderRegistry
from unillm.services.router import Dispatcher

logger = structlog.get_logger()


def custom_generate_unique_id(route: APIRoute) -> str:
    return f"{route.tags[0]}-{route.name}" if route.tags else route.name


def _upstream_timeout() -> httpx.Timeout:
    return httpx.Timeout(
        settings.UPSTREAM_TIMEOUT_SECONDS,
        connect=settings.UPSTREAM_CONNECT_TIMEOUT_SECONDS,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # tests inject a ready-made dispatcher
    if getattr(app.state, "dispatcher", None) is not None:
        yield
        return

    config = load_models_config(settings.MODELS_CONFIG_PATH)
    if settings.OPENWEBUI_LATEST_TAGS:
        config = config.with_latest_tags()
    registry = ProviderRegistry.from_config(config)

    async with AsyncExitStack() as stack:
        # direct client ignores HTTP(S)_PROXY from the environment
        client = await stack.enter_async_context(
            httpx.AsyncClient(timeout=_upstream_timeout(), trust_env=False)
        )
        proxy_client = None
        if config.proxy_url:
            proxy_client = await stack.enter_async_context(
                httpx.AsyncClient(proxy=config.proxy_url, timeout=_upstream_timeout())
            )
        app.state.dispatcher = Dispatcher(registry, client, proxy_client)
        logger.info(
            "gateway_ready",
            models=len(registry.model_ids()),
            proxy=config.proxy_url is not None,
        )
        try:
            yield
        finally:
            app.state.dispatcher = None


async def gateway_error_handler(request: Request, exc: GatewayError) -> PlainTextResponse:
    GATEWAY_ERRORS.labels(exc.stage, type(exc).__name__).inc()
    logger.error(
        "request_failed",
        path=request.url.path,
        stage=exc.stage,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return PlainTextResponse(f"Something went wrong: {exc}", status_code=exc.status_code)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> PlainTextResponse:
    logger.warning("invalid_request", path=request.url.path, errors=exc.errors())
    return PlainTextResponse(f"Invalid request: {exc.errors()}", status_code=400)


def create_app(dispatcher: Optional[Dispatcher] = None) -> FastAPI:
    app = FastAPI(
        title=settings.PROJECT_NAME,
        generate_unique_id_function=custom_generate_unique_id,
        lifespan=lifespan,
    )
    app.state.dispatcher = dispatcher

    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIdMiddleware)

    # Set all CORS enabled origins
    if settings.all_cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.all_cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    app.include_router(api_router, prefix=settings.API_PREFIX)
    app.include_router(metrics_router)
    return app


configure_logging()

if settings.SENTRY_DSN and settings.ENVIRONMENT != "local":
    sentry_sdk.init(dsn=str(settings.SENTRY_DSN), enable_tracing=True)

app = create_app()
