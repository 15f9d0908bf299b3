"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from orchestrator.broker.base import BackoffType
from orchestrator.constants import JobStatus, JobType


class BackoffOptions(BaseModel):
    """Delay policy between attempts."""

    type: BackoffType = Field(default=BackoffType.EXPONENTIAL, description="fixed or exponential")
    delay_ms: int | None = Field(default=None, ge=0, description="Base delay; the queue default when unset")


class EnqueueOptions(BaseModel):
    """Per-call overrides of the queue's delivery policy."""

    attempts: int | None = Field(default=None, ge=1, le=25, description="Maximum attempts")
    delay_ms: int | None = Field(default=None, ge=0, description="Delay before first delivery")
    priority: int | None = Field(default=None, ge=0, description="Lower runs first")
    backoff_delay_ms: int | None = Field(default=None, ge=0, description="Base backoff delay")
    backoff: BackoffOptions | None = Field(default=None, description="Backoff policy override")


class EnqueueRequest(BaseModel):
    """Request body for enqueueing a job."""

    job_type: JobType = Field(..., description="Job type to run")
    payload: dict[str, Any] = Field(default_factory=dict, description="Job payload data")
    options: EnqueueOptions = Field(default_factory=EnqueueOptions)


class EnqueueResponse(BaseModel):
    """Response body after enqueueing a job."""

    job_type: JobType
    queue: str
    item_id: str | None
    durable_job_id: UUID | None
    deduplicated: bool
    message: str


class JobResponse(BaseModel):
    """Durable job record."""

    id: UUID
    type: str
    queue: str
    status: JobStatus
    tenant_id: str | None
    payload: dict[str, Any]
    attempts: int
    max_attempts: int
    priority: int
    broker_ref: str | None
    result: Any = None
    error: str | None
    scheduled_for: datetime | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None

    model_config = {"from_attributes": True}


class JobListResponse(BaseModel):
    """Paginated list of durable job records."""

    jobs: list[JobResponse]
    total: int
    page: int
    page_size: int
    has_next: bool


class QueueCountsResponse(BaseModel):
    """Per-state item counts for one queue."""

    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    paused: bool = False
    total: int


class QueueItemResponse(BaseModel):
    """Operator view of a broker item."""

    id: str
    name: str
    data: dict[str, Any]
    state: str | None
    attempts_made: int
    max_attempts: int
    timestamp: int
    processed_on: int | None
    finished_on: int | None
    failed_reason: str | None


class QueueDetailResponse(BaseModel):
    """Counts, pause flag and recent items for one queue."""

    name: str
    counts: QueueCountsResponse
    paused: bool
    items: dict[str, list[QueueItemResponse]]


class FleetResponse(BaseModel):
    """Counts for every queue plus fleet-wide totals."""

    queues: dict[str, QueueCountsResponse]
    totals: QueueCountsResponse


class CleanRequest(BaseModel):
    """Request body for cleaning settled items from every queue."""

    completed_grace_ms: int | None = Field(default=None, ge=0)
    failed_grace_ms: int | None = Field(default=None, ge=0)
    limit: int | None = Field(default=None, ge=1)


class CleanResponse(BaseModel):
    """Result of a clean run."""

    removed: dict[str, dict[str, int]]
    total_removed: int
    memory_before: str | None
    memory_after: str | None


class ActionResponse(BaseModel):
    """Acknowledgement of an operator action."""

    success: bool = True
    message: str


class AuthRequest(BaseModel):
    """Authentication request."""

    api_key: str = Field(..., description="Operator API key")
    operator: str = Field(..., description="Operator identifier recorded on actions")


class TokenResponse(BaseModel):
    """JWT token response."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    coordination_store: str
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
