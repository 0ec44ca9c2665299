"""FastAPI application for CodeLink."""

import asyncio
import logging
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from codelink.api import linkage_router, search_router
from codelink.core.config import Settings, settings
from codelink.core.database import close_db
from codelink.core.errors import StorageUnavailable
from codelink.core.logging import configure_logging
from codelink.services.engine import build_engine

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the engine on startup and release database connections on shutdown."""
    startup_start = time.perf_counter()
    app_settings: Settings = app.state.settings
    configure_logging(app_settings.log_level)

    # Tests inject a prebuilt engine
    if getattr(app.state, "engine", None) is None:
        app.state.engine = build_engine(app_settings)

    app.state.startup_time_ms = (time.perf_counter() - startup_start) * 1000
    logger.info(f"CodeLink engine ready in {app.state.startup_time_ms:.0f}ms")

    yield

    app.state.engine.close()
    close_db()


def create_app(app_settings: Settings | None = None) -> FastAPI:
    """Create the FastAPI application."""
    app_settings = app_settings or settings

    app = FastAPI(
        title=app_settings.app_name,
        description="Hybrid diagnosis code search and validated diagnosis to procedure linkage.",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.settings = app_settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(search_router, prefix=app_settings.api_v1_prefix)
    app.include_router(linkage_router, prefix=app_settings.api_v1_prefix)

    @app.get("/health", tags=["Health"])
    async def health_check() -> dict[str, Any]:
        """Liveness probe; does not touch the catalog."""
        return {
            "status": "healthy",
            "service": "codelink",
            "version": VERSION,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    @app.get("/ready", tags=["Health"])
    async def readiness_check() -> dict[str, Any]:
        """Readiness check endpoint.

        Confirms the engine is built and the catalog store answers.
        """
        engine = getattr(app.state, "engine", None)
        if engine is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Engine is not initialized",
            )

        try:
            await asyncio.wait_for(
                asyncio.to_thread(engine.store.check),
                timeout=engine.config.storage_timeout,
            )
        except (StorageUnavailable, asyncio.TimeoutError) as e:
            logger.error(f"Readiness check failed: {e}")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Catalog store unavailable",
            ) from e

        return {
            "status": "ready",
            "service": "codelink",
            "version": VERSION,
            "timestamp": datetime.now(UTC).isoformat(),
            "startup_time_ms": getattr(app.state, "startup_time_ms", 0),
            "store": type(engine.store).__name__,
            "embedding_provider": type(engine.embedder).__name__,
            "rules": len(engine.validator.rules),
        }

    @app.get("/", tags=["Health"])
    async def root() -> dict[str, str]:
        """Root endpoint with API info."""
        return {
            "service": "CodeLink API",
            "version": VERSION,
            "docs": "/docs",
            "health": "/health",
            "ready": "/ready",
        }

    return app


app = create_app()
