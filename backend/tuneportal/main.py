"""TunePortal Backend - FastAPI Application Factory."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tuneportal.api.error_handling import register_exception_handlers
from tuneportal.api.health import router as health_router
from tuneportal.api.router import api_router
from tuneportal.core import async_session_maker, settings, setup_logging
from tuneportal.core.logging import get_logger
from tuneportal.middleware import SecurityHeadersMiddleware

# Import all models to ensure they're registered with Base for Alembic
from tuneportal.models import (  # noqa: F401
    RateLimitCounter,
    SecurityAlert,
    SecurityEvent,
    SessionTermination,
    User,
    UserSession,
    VerificationToken,
)
from tuneportal.services.maintenance import maintenance_jobs, run_periodically
from tuneportal.services.security_log import SecurityEventLogger

logger = get_logger("main")


def task_done_callback(task: asyncio.Task[None]) -> None:
    """Log unhandled exceptions from background tasks."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Background task {task.get_name()} failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    setup_logging(
        level=settings.log_level,
        format_type="structured" if not settings.debug else "dev",
    )
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    SecurityEventLogger.get_instance().set_db_session_factory(async_session_maker)

    for warning in settings.check_security_configuration():
        logger.warning(f"SECURITY: {warning}")

    tasks: list[asyncio.Task] = []
    for name, job, interval in maintenance_jobs():
        task = asyncio.create_task(
            run_periodically(name, job, interval, async_session_maker), name=name
        )
        task.add_done_callback(task_done_callback)
        tasks.append(task)

    yield

    logger.info("Shutting down...")
    for task in tasks:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        description="ECU tuning customer portal - authentication and security API",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )

    register_exception_handlers(app)

    app.add_middleware(SecurityHeadersMiddleware)

    # CORS middleware - MUST be outermost (added last in Starlette LIFO order)
    # so that CORS headers are present on error responses too.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept", "X-Request-ID"],
    )

    if settings.enable_metrics:
        from prometheus_fastapi_instrumentator import Instrumentator

        Instrumentator(excluded_handlers=["/health", "/metrics"]).instrument(app).expose(
            app, endpoint="/metrics", include_in_schema=False
        )

    app.include_router(health_router)  # Health at root level
    app.include_router(api_router)  # API at /api

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint with API information."""
        return {"name": settings.app_name, "version": settings.app_version}

    return app


# Application instance
app = create_app()
