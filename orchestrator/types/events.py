"""
Lifecycle event definitions.

The worker pool publishes one event per settled attempt; the status
recorder and the dedup controller consume them.
"""

from datetime import datetime, timezone
from enum import StrEnum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class JobEventKind(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"


class JobEvent(BaseModel):
    """
    Event emitted when the broker settles an attempt.

    attempts_made already includes the attempt being reported.
    """

    kind: JobEventKind
    queue: str
    item_id: str
    job_type: str
    durable_job_id: UUID | None = None
    tenant_id: str | None = None
    attempts_made: int
    max_attempts: int
    result: Any = None
    error: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def attempts_exhausted(self) -> bool:
        """True once no further delivery will happen for this item."""
        return self.attempts_made >= self.max_attempts

    @property
    def is_terminal(self) -> bool:
        return self.kind == JobEventKind.COMPLETED or self.attempts_exhausted

    @classmethod
    def completed(
        cls,
        queue: str,
        item_id: str,
        job_type: str,
        attempts_made: int,
        max_attempts: int,
        durable_job_id: UUID | None = None,
        tenant_id: str | None = None,
        result: Any = None,
    ) -> "JobEvent":
        """Create a job completed event."""
        return cls(
            kind=JobEventKind.COMPLETED,
            queue=queue,
            item_id=item_id,
            job_type=job_type,
            durable_job_id=durable_job_id,
            tenant_id=tenant_id,
            attempts_made=attempts_made,
            max_attempts=max_attempts,
            result=result,
        )

    @classmethod
    def failed(
        cls,
        queue: str,
        item_id: str,
        job_type: str,
        attempts_made: int,
        max_attempts: int,
        error: str,
        durable_job_id: UUID | None = None,
        tenant_id: str | None = None,
    ) -> "JobEvent":
        """Create a job failed event (retryable or terminal)."""
        return cls(
            kind=JobEventKind.FAILED,
            queue=queue,
            item_id=item_id,
            job_type=job_type,
            durable_job_id=durable_job_id,
            tenant_id=tenant_id,
            attempts_made=attempts_made,
            max_attempts=max_attempts,
            error=error,
        )
