"""
FastAPI application setup with CORS middleware and Prometheus metrics.
"""

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import Gauge, make_asgi_app

from src.backend.core.config import get_config
from src.backend.core.dependencies import get_service_manager
from src.backend.utils.logging import LogContext

logger = logging.getLogger(__name__)

# Prometheus metric for startup time
STARTUP_TIME_GAUGE = Gauge(
    "argos_startup_time_seconds", "Time taken for service to start in seconds"
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Initialize services on startup and shut them down on exit."""
    config = get_config()
    start_time = time.time()

    logger.info(f"Starting {config.app.APP_NAME} v{config.app.APP_VERSION}")
    logger.info(f"Environment: {config.app.APP_ENV}")

    service_manager = get_service_manager()
    try:
        await service_manager.initialize_services()
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}")
        raise

    startup_duration = time.time() - start_time
    logger.info(f"Service started in {startup_duration * 1000:.2f}ms")
    STARTUP_TIME_GAUGE.set(startup_duration)

    try:
        yield
    finally:
        logger.info("Shutting down application")
        await service_manager.shutdown_services()
        logger.info("All services shutdown successfully")


def create_app() -> FastAPI:
    """
    Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    config = get_config()

    app = FastAPI(
        title=config.app.APP_NAME,
        version=config.app.APP_VERSION,
        description="ARGOS - HackRF sweep supervision and spatial signal intelligence",
        lifespan=lifespan,
    )

    # Configure CORS middleware
    if config.api.API_CORS_ENABLED:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.api.API_CORS_ORIGINS,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
        logger.info(f"CORS enabled with origins: {config.api.API_CORS_ORIGINS}")

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        with LogContext(request.headers.get("X-Request-ID")) as request_id:
            response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    from src.backend.api.routes import analytics, health, signals, sweep

    app.include_router(health.router, tags=["health"])
    app.include_router(sweep.router, tags=["sweep"])  # Already has /api/sweep prefix
    app.include_router(signals.router, tags=["signals"])  # Already has /api/signals prefix
    app.include_router(analytics.router, tags=["analytics"])  # Already has /api/analytics prefix

    if config.api.API_METRICS_ENABLED:
        app.mount("/metrics", make_asgi_app())
        logger.info("Prometheus metrics enabled at /metrics endpoint")

    return app
