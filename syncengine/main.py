"""
FastAPI application factory with middleware, CORS, and request tracing.
"""

import os
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from syncengine import __version__
from syncengine.config import get_settings
from syncengine.routers import connection, schedules, sync, webhooks
from syncengine.services import SyncServices, build_services
from syncengine.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


def create_app(services: Optional[SyncServices] = None) -> FastAPI:
    """
    Application factory.

    Args:
        services: Pre-built component graph; built from settings on startup
            when omitted
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        configure_logging()
        logger.info(
            "application_startup",
            version=app.version,
            environment=settings.intuit_env,
            dev_mode=settings.dev_mode,
        )

        if settings.db_type == "duckdb":
            os.makedirs(os.path.dirname(settings.db_path) or ".", exist_ok=True)

        app.state.services = services or build_services(settings)
        if settings.scheduler_autostart:
            await app.state.services.scheduler.start()

        yield

        await app.state.services.aclose()
        logger.info("application_shutdown")

    app = FastAPI(
        title="FieldOps Sync Engine",
        description="QuickBooks Online integration sync engine",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    @app.middleware("http")
    async def request_tracing_middleware(request: Request, call_next):
        """Add request ID and timing to all requests."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        logger.info(
            "request_started",
            method=request.method,
            path=request.url.path,
            client=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                error=str(e),
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content={
                    "success": False,
                    "error": "Internal server error",
                    "request_id": request_id,
                },
                headers={"X-Request-ID": request_id},
            )

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
        )
        return response

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for load balancers and monitoring."""
        return {
            "status": "healthy",
            "version": app.version,
            "environment": settings.intuit_env,
        }

    app.include_router(connection.router, prefix="/api/v1/connection", tags=["Connection"])
    app.include_router(sync.router, prefix="/api/v1/sync", tags=["Sync"])
    app.include_router(schedules.router, prefix="/api/v1/schedules", tags=["Schedules"])
    app.include_router(webhooks.router, prefix="/api/v1/webhooks", tags=["Webhooks"])

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "syncengine.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        log_level=settings.log_level.lower(),
    )
