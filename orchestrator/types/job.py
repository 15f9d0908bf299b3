"""
Job-related type definitions for internal use.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from uuid import UUID

from orchestrator.broker.base import QueueItem
from orchestrator.constants import JobType, QueueName

if TYPE_CHECKING:
    from orchestrator.queues import QueueRegistry


@dataclass(frozen=True)
class EnqueueResult:
    """
    Handle returned to producers.

    A deduplicated result means nothing was written: an equivalent job
    for the same tenant is still outstanding.
    """

    job_type: JobType
    queue: QueueName
    item_id: str | None = None
    durable_job_id: UUID | None = None
    deduplicated: bool = False
    dedup_key: str | None = None

    @property
    def broker_ref(self) -> str | None:
        if self.item_id is None:
            return None
        return f"{self.queue}:{self.item_id}"


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.

    Handlers may run more than once for the same payload and must be
    idempotent.
    """

    item: QueueItem
    durable_job_id: UUID | None = None
    registry: "QueueRegistry | None" = None

    @property
    def item_id(self) -> str:
        return self.item.id

    @property
    def queue(self) -> str:
        return self.item.queue

    @property
    def job_type(self) -> str:
        return self.item.name

    @property
    def payload(self) -> dict[str, Any]:
        return self.item.data

    @property
    def tenant_id(self) -> str | None:
        return self.item.tenant_id

    @property
    def attempts_made(self) -> int:
        """Attempts finished before this one."""
        return self.item.attempts_made

    @property
    def attempt(self) -> int:
        """1-based number of the running attempt."""
        return self.item.attempts_made + 1

    @property
    def max_attempts(self) -> int:
        return self.item.max_attempts

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts after this one."""
        return max(0, self.max_attempts - self.attempt)

    async def enqueue(
        self,
        job_type: JobType | str,
        payload: dict[str, Any] | None = None,
        options: dict[str, Any] | None = None,
    ) -> EnqueueResult:
        """Fan out further work from inside a handler."""
        if self.registry is None:
            raise RuntimeError("Handler context has no queue registry attached")
        return await self.registry.enqueue(job_type, payload, options)
