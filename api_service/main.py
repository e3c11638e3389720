from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from api_service.api.data import router as data_router
from api_service.api.errors import unhandled_exception_handler
from api_service.api.health import router as health_router
from api_service.api.metrics_endpoint import router as metrics_router
from api_service.core.config import SETTINGS, Settings
from api_service.core.logging import RequestLogger, setup_logging
from api_service.core.loki import start_loki_sink, stop_loki_sink
from api_service.core.metrics import MetricsRegistry
from api_service.middleware.metrics import InstrumentationMiddleware

# Configure logging before anything else runs.
setup_logging(
    SETTINGS.log_level,
    json_format=SETTINGS.log_json,
    service_name=SETTINGS.service_name,
)

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    registry: MetricsRegistry | None = None,
    request_logger: RequestLogger | None = None,
) -> FastAPI:
    """Build the ASGI app.

    The metrics registry and request logger are created once here (or
    injected by tests) and shared by the middleware and the /metrics
    route through app.state.
    """
    settings = settings if settings is not None else SETTINGS
    registry = registry if registry is not None else MetricsRegistry()
    request_logger = request_logger if request_logger is not None else RequestLogger()

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
        sink = None
        if settings.loki_host:
            sink = start_loki_sink(
                settings.loki_host,
                {"job": settings.service_name},
                service_name=settings.service_name,
            )
        logger.info(
            "%s listening on port %d  env=%s log_level=%s loki=%s",
            settings.service_name,
            settings.port,
            settings.app_env,
            settings.log_level,
            settings.loki_host or "off",
        )
        try:
            yield
        finally:
            if sink is not None:
                stop_loki_sink(sink)

    app = FastAPI(
        title=settings.service_name,
        lifespan=lifespan,
        docs_url="/docs" if settings.is_dev else None,
        redoc_url="/redoc" if settings.is_dev else None,
    )
    app.state.settings = settings
    app.state.metrics_registry = registry
    app.state.request_logger = request_logger

    app.add_middleware(
        InstrumentationMiddleware,
        registry=registry,
        request_logger=request_logger,
    )
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(metrics_router)
    app.include_router(health_router)
    app.include_router(data_router)
    return app


app = create_app()


def run() -> None:
    """Serve on 0.0.0.0:3000.  A port already in use makes uvicorn exit."""
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=SETTINGS.port,
        access_log=False,
        log_config=None,
    )


if __name__ == "__main__":
    run()
