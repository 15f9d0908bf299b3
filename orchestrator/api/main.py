"""
FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orchestrator import __version__
from orchestrator.api.routes import auth_router, health_router, jobs_router, queues_router
from orchestrator.broker import RedisQueueBackend
from orchestrator.config import get_settings
from orchestrator.coordination import CoordinationStore, RedisCoordinationStore, create_redis_connection
from orchestrator.db import close_db, init_db
from orchestrator.dedup import DedupController
from orchestrator.errors import ConfigurationError, ItemStateError, PayloadValidationError
from orchestrator.observability.logging import setup_logging
from orchestrator.observability.metrics import setup_metrics
from orchestrator.observability.tracing import instrument_fastapi, setup_tracing
from orchestrator.queues import QueueRegistry
from orchestrator.recorder import JobStatusRecorder
from orchestrator.types.api import ErrorResponse

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Builds the queue registry and session factory unless they were
    injected through create_app().
    """
    owned = app.state.registry is None
    if owned:
        setup_logging("api")
        setup_tracing()
        settings = get_settings()
        metrics = setup_metrics()

        app.state.session_factory = await init_db()
        store = RedisCoordinationStore(create_redis_connection(settings))
        backend = RedisQueueBackend(store.client, prefix=settings.redis_key_prefix)
        app.state.store = store
        app.state.registry = QueueRegistry(
            backend,
            DedupController(store, ttl_seconds=settings.dedup_ttl_seconds),
            recorder=JobStatusRecorder(app.state.session_factory),
            store=store,
            metrics=metrics,
            settings=settings,
        )

    logger.info("Application started")

    yield

    if owned:
        await app.state.registry.close()
        await app.state.store.close()
        await close_db()
    logger.info("Application shutdown")


async def _payload_error(request: Request, exc: PayloadValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=ErrorResponse(error="invalid_payload", detail=str(exc)).model_dump(),
    )


async def _configuration_error(request: Request, exc: ConfigurationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ErrorResponse(error="invalid_request", detail=str(exc)).model_dump(),
    )


async def _item_state_error(request: Request, exc: ItemStateError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=ErrorResponse(error="invalid_item_state", detail=str(exc)).model_dump(),
    )


def create_app(
    registry: QueueRegistry | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    store: CoordinationStore | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        registry: Queue registry to serve; built at start-up if omitted.
        session_factory: Durable store sessions; required with registry.
        store: Coordination store checked by the health routes.

    Returns:
        FastAPI: The configured application instance.
    """
    if registry is not None and session_factory is None:
        raise ValueError("An injected registry needs a session factory")

    app = FastAPI(
        title="Tenant Job Orchestrator API",
        description="Operator surface for named queues, durable job records and queue maintenance",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.registry = registry
    app.state.session_factory = session_factory
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(PayloadValidationError, _payload_error)
    app.add_exception_handler(ConfigurationError, _configuration_error)
    app.add_exception_handler(ItemStateError, _item_state_error)

    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(jobs_router)
    app.include_router(queues_router)

    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()

    uvicorn.run(
        "orchestrator.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
