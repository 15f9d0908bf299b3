"""
Pytest configuration and shared fixtures.

Tests run against the in-memory coordination store and queue backend and
a throwaway SQLite database, so no Redis or Postgres is needed.
"""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from prometheus_client import CollectorRegistry
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from orchestrator.api.auth import create_access_token
from orchestrator.api.main import create_app
from orchestrator.broker import MemoryQueueBackend
from orchestrator.config import Settings
from orchestrator.coordination import CoordinationStore, MemoryCoordinationStore, MemoryInfo
from orchestrator.db import create_schema, create_session_factory
from orchestrator.dedup import DedupController
from orchestrator.errors import CoordinationStoreError
from orchestrator.events import LifecycleEventBus
from orchestrator.locks import DistributedLock
from orchestrator.observability.metrics import MetricsCollector
from orchestrator.queues import QueueRegistry
from orchestrator.recorder import JobStatusRecorder


class ManualClock:
    """Settable clock in epoch milliseconds for the memory backend."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class UnreachableStore(CoordinationStore):
    """A coordination store whose every command fails, like a dropped connection."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    def _fail(self, command: str):
        self.calls.append(command)
        raise CoordinationStoreError(f"{command} failed: connection refused")

    async def set_if_absent(self, key: str, value: str, ttl_ms: int | None = None) -> bool:
        self._fail("SET NX")

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        self._fail("EVAL")

    async def get(self, key: str) -> str | None:
        self._fail("GET")

    async def set(self, key: str, value: str, ttl_ms: int | None = None) -> None:
        self._fail("SET")

    async def delete(self, key: str) -> bool:
        self._fail("DEL")

    async def exists(self, key: str) -> bool:
        self._fail("EXISTS")

    async def memory_info(self) -> MemoryInfo:
        self._fail("INFO")

    async def ping(self) -> bool:
        self._fail("PING")

    async def close(self) -> None:
        pass


@pytest.fixture
def unreachable_store() -> UnreachableStore:
    return UnreachableStore()


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        database_url="sqlite+aiosqlite://",
        api_secret_key="test-secret-key",
        log_level="DEBUG",
        log_format="console",
        worker_poll_interval_seconds=0.01,
        completed_retention_count=100,
        failed_retention_count=500,
        strict_handler_coverage=False,
    )


@pytest_asyncio.fixture
async def async_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine]:
    """Create a file-backed SQLite engine with the schema in place."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}", echo=False)
    await create_schema(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(async_engine)


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession]:
    """Create a database session for tests."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store() -> MemoryCoordinationStore:
    return MemoryCoordinationStore()


@pytest.fixture
def backend(clock: ManualClock) -> MemoryQueueBackend:
    return MemoryQueueBackend(clock=clock)


@pytest.fixture
def metrics() -> MetricsCollector:
    """Metrics on a private registry so tests never collide."""
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def dedup(store: MemoryCoordinationStore) -> DedupController:
    return DedupController(store)


@pytest.fixture
def locks(store: MemoryCoordinationStore, metrics: MetricsCollector) -> DistributedLock:
    return DistributedLock(store, metrics=metrics)


@pytest.fixture
def recorder(session_factory: async_sessionmaker[AsyncSession]) -> JobStatusRecorder:
    return JobStatusRecorder(session_factory)


@pytest.fixture
def events(recorder: JobStatusRecorder, dedup: DedupController) -> LifecycleEventBus:
    """Event bus with the recorder and dedup subscribed, as in a worker."""
    bus = LifecycleEventBus()
    bus.subscribe(recorder.on_event, name="recorder")
    bus.subscribe(dedup.on_event, name="dedup")
    return bus


@pytest.fixture
def registry(
    backend: MemoryQueueBackend,
    dedup: DedupController,
    recorder: JobStatusRecorder,
    store: MemoryCoordinationStore,
    metrics: MetricsCollector,
    test_settings: Settings,
) -> QueueRegistry:
    return QueueRegistry(
        backend,
        dedup,
        recorder=recorder,
        store=store,
        metrics=metrics,
        settings=test_settings,
    )


@pytest.fixture
def app(
    registry: QueueRegistry,
    session_factory: async_sessionmaker[AsyncSession],
    store: MemoryCoordinationStore,
) -> FastAPI:
    """Create a FastAPI app around the in-memory components."""
    return create_app(registry=registry, session_factory=session_factory, store=store)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def auth_headers() -> dict[str, str]:
    """Create authentication headers for testing."""
    token = create_access_token(subject="test-operator")
    return {
        "Authorization": f"Bearer {token}",
    }
