"""
FastAPI dependencies for components wired at application start-up.
"""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.coordination.base import CoordinationStore
from orchestrator.queues import QueueRegistry


def get_registry(request: Request) -> QueueRegistry:
    return request.app.state.registry


def get_store(request: Request) -> CoordinationStore | None:
    return getattr(request.app.state, "store", None)


async def get_async_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a database session from the application's session factory.

    Rolled back if the route raises.
    """
    async with request.app.state.session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


Registry = Annotated[QueueRegistry, Depends(get_registry)]
Session = Annotated[AsyncSession, Depends(get_async_session)]
