"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from orchestrator.constants import (
    METRIC_JOB_DURATION,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_DEDUPLICATED,
    METRIC_JOBS_ENQUEUED,
    METRIC_LOCK_ACQUISITIONS,
    METRIC_QUEUE_DEPTH,
    METRIC_STALLED_RECOVERED,
    METRIC_STORE_MEMORY,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the orchestrator.

    Collects metrics for:
    - Queue depth per broker state
    - Enqueues and dedup skips
    - Attempt outcomes and durations
    - Stalled item recovery
    - Lock acquisitions
    - Coordination store memory
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of items in a queue by broker state",
            ["queue", "state"],
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["queue", "job_type"],
            registry=self._registry,
        )

        self.jobs_deduplicated = Counter(
            METRIC_JOBS_DEDUPLICATED,
            "Total number of enqueues skipped by tenant dedup",
            ["queue", "job_type"],
            registry=self._registry,
        )

        # status is completed, retrying or failed
        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of settled job attempts",
            ["queue", "job_type", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job attempt duration in seconds",
            ["queue", "status"],
            buckets=(0.1, 0.5, 1.0, 5.0, 30.0, 60.0, 300.0, 600.0, 3600.0),
            registry=self._registry,
        )

        self.stalled_recovered = Counter(
            METRIC_STALLED_RECOVERED,
            "Total number of active items returned to waiting after their lock expired",
            ["queue"],
            registry=self._registry,
        )

        self.lock_acquisitions = Counter(
            METRIC_LOCK_ACQUISITIONS,
            "Distributed lock acquisition attempts by outcome",
            ["outcome"],
            registry=self._registry,
        )

        self.store_memory = Gauge(
            METRIC_STORE_MEMORY,
            "Coordination store memory usage",
            ["kind"],
            registry=self._registry,
        )

    def record_job_enqueued(self, queue: str, job_type: str) -> None:
        self.jobs_enqueued.labels(queue=queue, job_type=job_type).inc()

    def record_job_deduplicated(self, queue: str, job_type: str) -> None:
        self.jobs_deduplicated.labels(queue=queue, job_type=job_type).inc()

    def record_job_completed(
        self,
        queue: str,
        job_type: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record a settled attempt."""
        self.jobs_completed.labels(queue=queue, job_type=job_type, status=status).inc()
        self.job_duration.labels(queue=queue, status=status).observe(duration_seconds)

    def update_queue_depth(self, queue: str, state: str, depth: int) -> None:
        self.queue_depth.labels(queue=queue, state=state).set(depth)

    def record_stalled_recovered(self, queue: str, count: int = 1) -> None:
        self.stalled_recovered.labels(queue=queue).inc(count)

    def record_lock(self, outcome: str) -> None:
        """Record a lock attempt: acquired, contended or error."""
        self.lock_acquisitions.labels(outcome=outcome).inc()

    def update_store_memory(self, used_bytes: int, max_bytes: int) -> None:
        self.store_memory.labels(kind="used").set(used_bytes)
        self.store_memory.labels(kind="max").set(max_bytes)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
