"""FastAPI application entry point for the Flow Studio local service.

This module initializes the FastAPI application with all middleware,
routers, and lifespan handlers configured.

Usage:
    uv run uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router, set_studio
from api.websocket import websocket_router
from config import settings
from events import get_signal_bus
from models.database import TranscriptCache
from remote.client import StudioClient
from studio import Studio

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Creates the remote client, the transcript cache and the studio, and on
    shutdown flushes pending flow writes before closing the client.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        server_url=settings.server_url,
        log_level=settings.log_level,
    )

    client = StudioClient(settings.server_url)

    cache: TranscriptCache | None = None
    try:
        cache = TranscriptCache(
            settings.transcript_cache_path,
            max_messages=settings.transcript_cache_max_messages,
        )
        await cache.init()
    except Exception as e:
        # Keep the service available without a transcript cache
        logger.warning("transcript_cache_unavailable", error=str(e))
        cache = None

    studio = Studio(client, get_signal_bus(), cache)
    set_studio(studio)
    app.state.studio = studio
    app.state.client = client

    if not await client.check_connection():
        logger.warning("server_unreachable_at_startup", server_url=settings.server_url)

    logger.info("application_started")

    yield

    logger.info("application_shutting_down")
    await app.state.studio.cleanup_all()
    await app.state.client.aclose()
    logger.info("application_shutdown_complete")


app = FastAPI(
    title="Flow Studio",
    description="Local service for editing flows and talking to agent sessions "
    "of a remote flow server.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

app.include_router(router, tags=["studio"])
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint pointing at the API documentation."""
    return {
        "message": "Flow Studio API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
