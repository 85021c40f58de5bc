"""
healthrelay API Main Application

FastAPI application for webhook intake and the record pull API.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from healthrelay import __version__
from healthrelay.api.routes import (
    connections_router,
    diagnostics_router,
    records_router,
    webhooks_router,
)
from healthrelay.config import get_settings
from healthrelay.observability.logging import configure_logging
from healthrelay.service import RelayService

logger = structlog.get_logger(__name__)


def create_app(service: RelayService | None = None) -> FastAPI:
    """
    Build the API application.

    A prepared RelayService may be passed in (tests inject fakes this
    way); otherwise one is built from settings.
    """
    settings = service.settings if service else get_settings()
    configure_logging(settings.app.log_level, json_logs=settings.app.log_json)

    relay = service or RelayService(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan manager for startup/shutdown events."""
        await relay.start()
        yield
        await relay.close()

    app = FastAPI(
        title="healthrelay",
        description="Health data webhook relay",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.service = relay

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =========================================================================
    # Health Check Endpoints
    # =========================================================================

    @app.get("/", tags=["Health"])
    async def root():
        """Root endpoint with API information."""
        return {
            "name": "healthrelay",
            "version": __version__,
            "description": "Health data webhook relay",
            "docs": "/docs",
        }

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        """Service status and counters."""
        return request.app.state.service.health()

    @app.get("/health/live", tags=["Health"])
    async def liveness_check():
        return {"status": "alive"}

    # =========================================================================
    # Error Handlers
    # =========================================================================

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler for unhandled errors."""
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    # Webhooks stay at the root; the pull and diagnostics API is versioned
    app.include_router(webhooks_router)
    app.include_router(connections_router, prefix="/v1")
    app.include_router(records_router, prefix="/v1")
    app.include_router(diagnostics_router, prefix="/v1")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "healthrelay.api.main:app",
        host=settings.app.api_host,
        port=settings.app.api_port,
        reload=settings.app.debug,
    )
