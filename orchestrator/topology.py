"""
Static queue topology.

Maps every job type to the queue that owns it and carries the per-queue
retry policy. The tables are defined once at import time and validated
exhaustively, so an unmapped job type fails the process at start-up
rather than at enqueue time.
"""

from dataclasses import dataclass
from typing import Any, Mapping

from orchestrator.constants import (
    ALL_TENANTS,
    PAYLOAD_DOMAIN_ID,
    PAYLOAD_TENANT_ID,
    JobType,
    QueueName,
)
from orchestrator.errors import ConfigurationError, PayloadValidationError, UnknownJobTypeError


@dataclass(frozen=True)
class QueueConfig:
    """Retry and timeout policy shared by every job type on a queue."""

    timeout_ms: int
    attempts: int
    backoff_delay_ms: int

    def lock_ms(self, grace_ms: int) -> int:
        """Broker lock duration: expected worst case plus a grace period."""
        return self.timeout_ms + grace_ms


@dataclass(frozen=True)
class JobTypeSpec:
    """How a job type is routed and guarded."""

    queue: QueueName
    requires_tenant: bool = True
    dedup: bool = True


QUEUE_CONFIG: dict[QueueName, QueueConfig] = {
    # AI generation, long-running
    QueueName.CONTENT: QueueConfig(timeout_ms=300_000, attempts=3, backoff_delay_ms=10_000),
    # SEO analysis, moderate
    QueueName.SEO: QueueConfig(timeout_ms=180_000, attempts=5, backoff_delay_ms=15_000),
    # GSC API, rate-limited
    QueueName.GSC: QueueConfig(timeout_ms=120_000, attempts=5, backoff_delay_ms=30_000),
    # Site creation and deploys
    QueueName.SITE: QueueConfig(timeout_ms=600_000, attempts=3, backoff_delay_ms=10_000),
    # Registrar / DNS
    QueueName.DOMAIN: QueueConfig(timeout_ms=180_000, attempts=5, backoff_delay_ms=30_000),
    QueueName.ANALYTICS: QueueConfig(timeout_ms=120_000, attempts=3, backoff_delay_ms=10_000),
    QueueName.ABTEST: QueueConfig(timeout_ms=60_000, attempts=3, backoff_delay_ms=5_000),
    # Bulk supplier sync, hours
    QueueName.SYNC: QueueConfig(timeout_ms=14_400_000, attempts=2, backoff_delay_ms=60_000),
    QueueName.MICROSITE: QueueConfig(timeout_ms=300_000, attempts=3, backoff_delay_ms=15_000),
    QueueName.SOCIAL: QueueConfig(timeout_ms=120_000, attempts=3, backoff_delay_ms=30_000),
    QueueName.ADS: QueueConfig(timeout_ms=300_000, attempts=3, backoff_delay_ms=30_000),
}


def _tenant_optional(queue: QueueName) -> JobTypeSpec:
    return JobTypeSpec(queue=queue, requires_tenant=False)


JOB_TYPES: dict[JobType, JobTypeSpec] = {
    # CONTENT_GENERATE can come from a microsite page with no tenant
    JobType.CONTENT_GENERATE: _tenant_optional(QueueName.CONTENT),
    JobType.CONTENT_OPTIMIZE: JobTypeSpec(QueueName.CONTENT),
    JobType.CONTENT_REVIEW: JobTypeSpec(QueueName.CONTENT),
    JobType.SEO_ANALYZE: JobTypeSpec(QueueName.SEO),
    JobType.SEO_AUTO_OPTIMIZE: JobTypeSpec(QueueName.SEO),
    JobType.SEO_OPPORTUNITY_SCAN: _tenant_optional(QueueName.SEO),
    JobType.SEO_OPPORTUNITY_OPTIMIZE: _tenant_optional(QueueName.SEO),
    JobType.SITE_SCAN: JobTypeSpec(QueueName.SEO),
    JobType.LINK_OPPORTUNITY_SCAN: JobTypeSpec(QueueName.SEO),
    JobType.LINK_BACKLINK_MONITOR: JobTypeSpec(QueueName.SEO),
    JobType.LINK_OUTREACH_GENERATE: JobTypeSpec(QueueName.SEO),
    JobType.LINK_ASSET_GENERATE: JobTypeSpec(QueueName.SEO),
    JobType.GSC_SYNC: JobTypeSpec(QueueName.GSC),
    JobType.GSC_VERIFY: JobTypeSpec(QueueName.GSC),
    JobType.GSC_SETUP: JobTypeSpec(QueueName.GSC),
    JobType.SITE_CREATE: _tenant_optional(QueueName.SITE),
    JobType.SITE_DEPLOY: JobTypeSpec(QueueName.SITE),
    JobType.QUEUE_CLEANUP: _tenant_optional(QueueName.SITE),
    JobType.DOMAIN_REGISTER: JobTypeSpec(QueueName.DOMAIN),
    JobType.DOMAIN_VERIFY: _tenant_optional(QueueName.DOMAIN),
    JobType.SSL_PROVISION: _tenant_optional(QueueName.DOMAIN),
    JobType.GA4_SETUP: JobTypeSpec(QueueName.ANALYTICS),
    JobType.GA4_DAILY_SYNC: _tenant_optional(QueueName.ANALYTICS),
    JobType.METRICS_AGGREGATE: JobTypeSpec(QueueName.ANALYTICS),
    JobType.PERFORMANCE_REPORT: JobTypeSpec(QueueName.ANALYTICS),
    JobType.REFRESH_ANALYTICS_VIEWS: _tenant_optional(QueueName.ANALYTICS),
    JobType.QUEUE_METRICS_SNAPSHOT: _tenant_optional(QueueName.ANALYTICS),
    JobType.ABTEST_ANALYZE: JobTypeSpec(QueueName.ABTEST),
    JobType.ABTEST_REBALANCE: JobTypeSpec(QueueName.ABTEST),
    JobType.SUPPLIER_SYNC: _tenant_optional(QueueName.SYNC),
    JobType.PRODUCT_SYNC: _tenant_optional(QueueName.SYNC),
    JobType.MICROSITE_CREATE: _tenant_optional(QueueName.MICROSITE),
    JobType.MICROSITE_PUBLISH: _tenant_optional(QueueName.MICROSITE),
    JobType.MICROSITE_CONTENT_GENERATE: _tenant_optional(QueueName.MICROSITE),
    JobType.MICROSITE_GSC_SYNC: _tenant_optional(QueueName.MICROSITE),
    # Social jobs legitimately run many per tenant
    JobType.SOCIAL_POST_GENERATE: JobTypeSpec(QueueName.SOCIAL, dedup=False),
    JobType.SOCIAL_POST_PUBLISH: JobTypeSpec(QueueName.SOCIAL, requires_tenant=False, dedup=False),
    JobType.SOCIAL_DAILY_POSTING: JobTypeSpec(QueueName.SOCIAL, requires_tenant=False, dedup=False),
    JobType.AD_CAMPAIGN_SYNC: _tenant_optional(QueueName.ADS),
    JobType.AD_PERFORMANCE_REPORT: _tenant_optional(QueueName.ADS),
    JobType.AD_BUDGET_OPTIMIZER: _tenant_optional(QueueName.ADS),
    JobType.BIDDING_ENGINE_RUN: _tenant_optional(QueueName.ADS),
}


def validate_topology(
    job_types: Mapping[JobType, JobTypeSpec] = JOB_TYPES,
    queue_config: Mapping[QueueName, QueueConfig] = QUEUE_CONFIG,
) -> None:
    """
    Check the routing tables are exhaustive.

    Raises:
        ConfigurationError: If a job type has no queue or a queue has no policy.
    """
    unmapped = [job_type.value for job_type in JobType if job_type not in job_types]
    if unmapped:
        raise ConfigurationError(f"Job types without a queue mapping: {', '.join(unmapped)}")

    unconfigured = sorted(
        {spec.queue.value for spec in job_types.values() if spec.queue not in queue_config}
    )
    if unconfigured:
        raise ConfigurationError(f"Queues without a policy: {', '.join(unconfigured)}")


def resolve_job_type(job_type: JobType | str) -> JobType:
    """
    Coerce a job type name to the enum.

    Raises:
        ConfigurationError: If the name is not a known job type.
    """
    try:
        resolved = JobType(job_type)
    except ValueError:
        raise ConfigurationError(
            f"Unknown job type: {job_type} - no queue mapping found"
        ) from None
    if resolved not in JOB_TYPES:
        raise ConfigurationError(f"Unknown job type: {job_type} - no queue mapping found")
    return resolved


def dispatch_job_type(name: str, queue: str | None = None) -> JobType:
    """Like resolve_job_type, but for names read back off the broker."""
    try:
        return resolve_job_type(name)
    except ConfigurationError:
        raise UnknownJobTypeError(name, queue) from None


def resolve_queue(queue: QueueName | str) -> QueueName:
    try:
        return QueueName(queue)
    except ValueError:
        raise ConfigurationError(f"Unknown queue: {queue}") from None


def queue_for(job_type: JobType | str) -> QueueName:
    return JOB_TYPES[resolve_job_type(job_type)].queue


def spec_for(job_type: JobType | str) -> JobTypeSpec:
    return JOB_TYPES[resolve_job_type(job_type)]


def job_types_for(queue: QueueName | str) -> list[JobType]:
    """All job types routed to a queue."""
    queue = resolve_queue(queue)
    return [job_type for job_type, spec in JOB_TYPES.items() if spec.queue == queue]


def validate_payload(job_type: JobType, payload: Mapping[str, Any]) -> None:
    """
    Reject tenant-scoped jobs that arrive without a tenant.

    The fan-out sentinel counts as a tenant here; a domain id is accepted
    in place of a tenant for domain-level work.

    Raises:
        PayloadValidationError: If the payload has no usable tenant.
    """
    if not JOB_TYPES[job_type].requires_tenant:
        return
    if payload.get(PAYLOAD_TENANT_ID) or payload.get(PAYLOAD_DOMAIN_ID):
        return
    raise PayloadValidationError(
        f"Job {job_type} missing {PAYLOAD_TENANT_ID} "
        f"(use '{ALL_TENANTS}' to fan out across tenants)"
    )


validate_topology()
