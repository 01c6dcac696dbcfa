"""FastAPI server for DEVSYNC."""

from collections.abc import AsyncGenerator
from typing import Callable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from devsync import __version__
from devsync.api.routes import control, devices


def create_api_app(
    lifespan: Callable[[FastAPI], AsyncGenerator[None, None]] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="DEVSYNC API",
        description="Intune / Defender device cross-sync",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS - localhost only by default
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:*", "http://127.0.0.1:*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(devices.router, prefix="/api/v1", tags=["devices"])
    app.include_router(control.router, prefix="/api/v1", tags=["control"])

    @app.get("/")
    async def root() -> dict:
        """Root endpoint."""
        return {
            "name": "DEVSYNC",
            "version": __version__,
            "description": "Intune / Defender device cross-sync",
            "docs": "/docs",
        }

    @app.get("/api/v1/health")
    async def health() -> dict:
        """Health check endpoint."""
        try:
            from devsync.daemon import get_daemon

            daemon = get_daemon()
            return {
                "status": "healthy" if daemon.running else "degraded",
                "version": __version__,
                "uptime_seconds": daemon.uptime_seconds,
                "sync_in_progress": daemon.sync_in_progress,
            }
        except RuntimeError:
            return {
                "status": "unhealthy",
                "version": __version__,
                "error": "Daemon not initialized",
            }

    return app
