"""Shared dependencies for API routers."""

import logging
import time
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from codelink.core.errors import StorageUnavailable
from codelink.services.engine import CodeLinkEngine

logger = logging.getLogger(__name__)

SLOW_REQUEST_MS = 100.0


def get_engine(request: Request) -> CodeLinkEngine:
    """Return the engine built during application startup."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Engine is not initialized",
        )
    return engine


Engine = Annotated[CodeLinkEngine, Depends(get_engine)]


def storage_unavailable(error: StorageUnavailable) -> HTTPException:
    logger.error(f"Request failed: {error}")
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=str(error),
    )


def elapsed_ms(start: float, endpoint: str) -> float:
    """Milliseconds since ``start``, logging slow requests."""
    latency = (time.perf_counter() - start) * 1000
    if latency > SLOW_REQUEST_MS:
        logger.warning(f"Slow {endpoint} request: {latency:.0f}ms")
    return round(latency, 2)
