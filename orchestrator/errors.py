"""
Exception hierarchy for the orchestration layer.
"""


class OrchestratorError(Exception):
    """Base class for all orchestration errors."""


class ConfigurationError(OrchestratorError):
    """Static topology or handler wiring is wrong. Raised at start-up."""


class UnknownJobTypeError(ConfigurationError):
    """A queue item names a job type with no mapping or no handler."""

    def __init__(self, job_type: str, queue: str | None = None):
        self.job_type = job_type
        self.queue = queue
        where = f" in queue {queue}" if queue else ""
        super().__init__(f"Unknown job type: {job_type}{where}")


class PayloadValidationError(OrchestratorError):
    """A producer passed a payload the job type cannot accept."""


class NonRetryableError(OrchestratorError):
    """
    Raised by handlers to fail a job permanently.

    The worker pool treats it as terminal regardless of how many
    attempts remain.
    """


class CoordinationStoreError(OrchestratorError):
    """The coordination store could not be reached or rejected a command."""


class ItemStateError(OrchestratorError):
    """An operator action does not apply to the item's current state."""
