"""
Type definitions for the orchestrator.
Contains input/output type definitions shared across modules.
"""

from orchestrator.types.api import (
    ActionResponse,
    AuthRequest,
    CleanRequest,
    CleanResponse,
    EnqueueOptions,
    EnqueueRequest,
    EnqueueResponse,
    ErrorResponse,
    FleetResponse,
    HealthResponse,
    JobListResponse,
    JobResponse,
    QueueCountsResponse,
    QueueDetailResponse,
    QueueItemResponse,
    TokenResponse,
)
from orchestrator.types.events import JobEvent, JobEventKind
from orchestrator.types.job import EnqueueResult, JobContext

__all__ = [
    # API types
    "ActionResponse",
    "AuthRequest",
    "CleanRequest",
    "CleanResponse",
    "EnqueueOptions",
    "EnqueueRequest",
    "EnqueueResponse",
    "ErrorResponse",
    "FleetResponse",
    "HealthResponse",
    "JobListResponse",
    "JobResponse",
    "QueueCountsResponse",
    "QueueDetailResponse",
    "QueueItemResponse",
    "TokenResponse",
    # Job types
    "EnqueueResult",
    "JobContext",
    # Event types
    "JobEvent",
    "JobEventKind",
]
