"""
API routes module.
"""

from orchestrator.api.routes.auth import router as auth_router
from orchestrator.api.routes.health import router as health_router
from orchestrator.api.routes.jobs import router as jobs_router
from orchestrator.api.routes.queues import router as queues_router

__all__ = ["jobs_router", "queues_router", "auth_router", "health_router"]
