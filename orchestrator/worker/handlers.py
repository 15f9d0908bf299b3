"""
Job handlers registry and built-in implementations.

Job handlers must be idempotent - they may be executed multiple times
for the same payload after a retry or a stalled-lock recovery.
"""

import importlib
import logging
from typing import Any, Awaitable, Callable, Iterable

from orchestrator.constants import JobType, QueueName
from orchestrator.errors import ConfigurationError, UnknownJobTypeError
from orchestrator.topology import dispatch_job_type, job_types_for, resolve_job_type
from orchestrator.types.job import JobContext

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[[JobContext], Awaitable[Any]]


class HandlerRegistry:
    """Maps job types to the coroutine that runs them."""

    def __init__(self) -> None:
        self._handlers: dict[JobType, JobHandler] = {}

    def register(self, job_type: JobType | str) -> Callable[[JobHandler], JobHandler]:
        """
        Decorator to register a job handler.

        Example:
            @handlers.register(JobType.SITE_SCAN)
            async def handle_site_scan(context: JobContext) -> dict:
                ...
        """

        def decorator(handler: JobHandler) -> JobHandler:
            self.add(job_type, handler)
            return handler

        return decorator

    def add(self, job_type: JobType | str, handler: JobHandler) -> None:
        resolved = resolve_job_type(job_type)
        if resolved in self._handlers and self._handlers[resolved] is not handler:
            logger.warning("Replacing handler", extra={"job_type": resolved.value})
        self._handlers[resolved] = handler
        logger.debug("Registered handler", extra={"job_type": resolved.value})

    def get(self, job_type: JobType | str) -> JobHandler | None:
        try:
            return self._handlers.get(JobType(job_type))
        except ValueError:
            return None

    def resolve(self, name: str, queue: str | None = None) -> JobHandler:
        """
        Find the handler for a job type name read off the broker.

        Raises:
            UnknownJobTypeError: If the name is not a job type or has no handler.
        """
        job_type = dispatch_job_type(name, queue)
        handler = self._handlers.get(job_type)
        if handler is None:
            raise UnknownJobTypeError(name, queue)
        return handler

    def list_handlers(self) -> list[str]:
        """List all registered job types."""
        return [job_type.value for job_type in self._handlers]

    def missing_for(self, queues: Iterable[QueueName | str]) -> list[str]:
        missing = []
        for queue in queues:
            for job_type in job_types_for(queue):
                if job_type not in self._handlers:
                    missing.append(job_type.value)
        return missing

    def validate(self, queues: Iterable[QueueName | str]) -> None:
        """
        Check every job type routed to the served queues has a handler.

        Raises:
            ConfigurationError: Listing the job types without a handler.
        """
        missing = self.missing_for(queues)
        if missing:
            raise ConfigurationError(f"No handler registered for: {', '.join(missing)}")

    def __contains__(self, job_type: object) -> bool:
        try:
            return JobType(job_type) in self._handlers
        except ValueError:
            return False

    def __len__(self) -> int:
        return len(self._handlers)


# Default registry used by business handler modules
_registry = HandlerRegistry()


def get_registry() -> HandlerRegistry:
    return _registry


def register_handler(job_type: JobType | str) -> Callable[[JobHandler], JobHandler]:
    """
    Decorator to register a handler on the default registry.

    Args:
        job_type: The job type this handler processes.
    """
    return _registry.register(job_type)


def load_handler_modules(paths: Iterable[str]) -> None:
    """
    Import modules whose import side effect registers handlers.

    Raises:
        ConfigurationError: If a module cannot be imported.
    """
    for path in paths:
        try:
            importlib.import_module(path)
        except ImportError as e:
            raise ConfigurationError(f"Cannot import handler module {path}: {e}") from e
        logger.info("Loaded handler module", extra={"module": path})


# ============================================================================
# Built-in job handlers
# ============================================================================


@register_handler(JobType.QUEUE_CLEANUP)
async def handle_queue_cleanup(context: JobContext) -> dict[str, Any]:
    """
    Sweep old completed and failed items from every queue.

    Payload may override completed_grace_ms, failed_grace_ms and limit.
    """
    if context.registry is None:
        raise ConfigurationError("QUEUE_CLEANUP needs a queue registry")
    payload = context.payload
    return await context.registry.clean_all_queues(
        completed_grace_ms=payload.get("completed_grace_ms"),
        failed_grace_ms=payload.get("failed_grace_ms"),
        limit=payload.get("limit"),
    )


@register_handler(JobType.QUEUE_METRICS_SNAPSHOT)
async def handle_queue_metrics_snapshot(context: JobContext) -> dict[str, Any]:
    """Refresh the queue depth gauges and return the fleet totals."""
    if context.registry is None:
        raise ConfigurationError("QUEUE_METRICS_SNAPSHOT needs a queue registry")
    per_queue, totals = await context.registry.get_fleet_counts()
    logger.info("Queue metrics snapshot", extra={"totals": totals.to_dict()})
    return {
        "queues": {name: counts.to_dict() for name, counts in per_queue.items()},
        "totals": totals.to_dict(),
    }
