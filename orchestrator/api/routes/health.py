"""
Health check routes.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator import __version__
from orchestrator.api.dependencies import get_async_session, get_store
from orchestrator.coordination.base import CoordinationStore
from orchestrator.observability.metrics import get_metrics
from orchestrator.types.api import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


async def _database_status(session: AsyncSession) -> str:
    try:
        await session.execute(text("SELECT 1"))
    except Exception:
        logger.warning("Database health check failed", exc_info=True)
        return "unhealthy"
    return "healthy"


async def _store_status(store: CoordinationStore | None) -> str:
    if store is None:
        return "not configured"
    try:
        await store.ping()
    except Exception:
        logger.warning("Coordination store health check failed", exc_info=True)
        return "unhealthy"
    return "healthy"


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health of the API, database and coordination store.",
)
async def health_check(
    session: AsyncSession = Depends(get_async_session),
    store: CoordinationStore | None = Depends(get_store),
) -> HealthResponse:
    """
    Perform a health check.

    Returns:
        HealthResponse with service status.
    """
    db_status = await _database_status(session)
    store_status = await _store_status(store)
    healthy = db_status == "healthy" and store_status != "unhealthy"

    return HealthResponse(
        status="healthy" if healthy else "degraded",
        version=__version__,
        database=db_status,
        coordination_store=store_status,
        timestamp=datetime.now(timezone.utc),
    )


@router.get(
    "/ready",
    summary="Readiness check",
    description="Check if the service is ready to receive traffic.",
)
async def readiness_check(
    session: AsyncSession = Depends(get_async_session),
    store: CoordinationStore | None = Depends(get_store),
) -> dict:
    """Kubernetes readiness probe endpoint."""
    ready = (
        await _database_status(session) == "healthy"
        and await _store_status(store) != "unhealthy"
    )
    return {"ready": ready}


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the service is alive.",
)
async def liveness_check() -> dict:
    """Kubernetes liveness probe endpoint."""
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics.",
)
async def metrics() -> Response:
    """Expose Prometheus metrics."""
    metrics_collector = get_metrics()
    return Response(
        content=metrics_collector.get_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
